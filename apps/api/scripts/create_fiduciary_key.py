import argparse
import uuid

from sqlalchemy import select

from core.api_keys import API_KEY_HEADER, issue_api_key
from core.db import SessionLocal
from models.fiduciary import DataFiduciary


DEFAULT_FIDUCIARY_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create (or fetch) a data fiduciary and generate a new API key."
    )
    parser.add_argument(
        "--fiduciary-name",
        default="local-dev",
        help="Data fiduciary name to create or reuse (default: local-dev).",
    )
    parser.add_argument(
        "--webhook-url",
        default=None,
        help="Webhook URL stored on a newly created fiduciary.",
    )
    parser.add_argument(
        "--label",
        default="local-dev-key",
        help="API key label (default: local-dev-key).",
    )
    parser.add_argument(
        "--use-default-fiduciary-id",
        action="store_true",
        help="Force the demo fiduciary UUID when creating the fiduciary.",
    )
    return parser.parse_args()


def get_or_create_fiduciary(db, name: str, webhook_url: str | None, use_default_id: bool) -> DataFiduciary:
    existing = db.scalar(select(DataFiduciary).where(DataFiduciary.name == name))
    if existing:
        return existing

    fiduciary = DataFiduciary(name=name, webhook_url=webhook_url)
    if use_default_id and name == "local-dev":
        fiduciary.id = DEFAULT_FIDUCIARY_ID

    db.add(fiduciary)
    db.flush()
    return fiduciary


def main() -> None:
    args = parse_args()
    db = SessionLocal()
    try:
        fiduciary = get_or_create_fiduciary(
            db, args.fiduciary_name, args.webhook_url, args.use_default_fiduciary_id
        )
        api_key, plaintext_key = issue_api_key(db, fiduciary, args.label)
        db.commit()

        print("Data Fiduciary ID:", fiduciary.id)
        print("Data Fiduciary Name:", fiduciary.name)
        print("API Key Label:", api_key.label)
        print("API Key (shown once):", plaintext_key)
        print("Header format:", API_KEY_HEADER)
    finally:
        db.close()


if __name__ == "__main__":
    main()
