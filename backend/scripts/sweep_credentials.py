"""
Delete expired and revoked auth credentials.

Meant to be run periodically by an external scheduler (cron, k8s CronJob):

  cd backend && python scripts/sweep_credentials.py
"""

import logging
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.core.database import SessionLocal  # noqa: E402
from app.core.exceptions import StorageUnavailableError  # noqa: E402
from app.services.credential_store import CredentialStore  # noqa: E402

logger = logging.getLogger("sweep_credentials")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    db = SessionLocal()
    try:
        removed = CredentialStore(db).sweep_expired()
    except StorageUnavailableError as exc:
        logger.error(f"Credential sweep failed: {exc.message}")
        return 1
    finally:
        db.close()
    logger.info(f"Credential sweep removed {removed} records")
    return 0


if __name__ == "__main__":
    sys.exit(main())
