import os
import sys
from pathlib import Path

# Set up the script directory and ensure it's in sys.path
script_directory = Path(__file__).resolve().parent
if str(script_directory) not in sys.path:
    sys.path.append(str(script_directory))

import argparse
import logging

import certifi
import uvicorn
from dotenv import load_dotenv

from src.secrets import setup_secrets


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Run the profile marketplace API.")
    ap.add_argument("--port", type=int, default=8086)
    ap.add_argument("--env", type=str, default="dev")
    ap.add_argument("--bootstrap-schema", action="store_true", help="Create missing tables at startup.")
    args = ap.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # Secrets delivered via environment variables (Cloud Run) are materialized first.
    if os.getenv("ENV_FILE") or os.getenv("SERVICE_ACCOUNT_KEY"):
        setup_secrets(args.env)

    # Load the env file relative to this script so it works regardless of CWD
    env_path = script_directory / "secrets" / f"env.{args.env}"
    if not env_path.exists():
        raise FileNotFoundError(f"Could not find an environment file for '{args.env}'.")
    load_dotenv(env_path, override=True)

    if args.bootstrap_schema:
        os.environ["MARKETPLACE_SCHEMA_BOOTSTRAP"] = "1"

    # TLS trust store for the Cloud SQL connector and the storage client
    if not os.path.exists(os.getenv("SSL_CERT_FILE", "")):
        os.environ["SSL_CERT_FILE"] = certifi.where()

    # Imported last: app.py reads its configuration from the environment loaded above.
    from app import app

    uvicorn.run(app, host="0.0.0.0", port=args.port)
