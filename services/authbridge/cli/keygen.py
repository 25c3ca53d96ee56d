"""
Key generation script for credential encryption.

Idempotent: skips if the key file already exists.
Run via: python -m authbridge.cli.keygen

Reads configuration from environment variables:
  AUTHBRIDGE_STORAGE__FILESYSTEM__KEY_FILE - Key file path (optional; default below)
"""

import logging
import os
import sys
from pathlib import Path

from authbridge.config import FilesystemConfig
from authbridge.services.encryption_service import load_or_create_key

# Use stdlib logging: structlog isn't configured for one-shot scripts
logger = logging.getLogger("authbridge.keygen")

KEY_FILE_ENV = "AUTHBRIDGE_STORAGE__FILESYSTEM__KEY_FILE"


def keygen(key_file: str | Path | None = None) -> bool:
    """Create the credential key file. Returns False when it already existed."""
    path = Path(
        key_file or os.environ.get(KEY_FILE_ENV, "") or FilesystemConfig().key_file
    ).expanduser()

    if path.exists():
        logger.info("Key file %s already exists, skipping", path)
        return False

    load_or_create_key(path)
    logger.info("Created key file %s (mode 0600)", path)
    logger.warning("IMPORTANT: Losing this file makes stored credentials unreadable.")
    return True


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        keygen()
    except OSError as e:
        logger.error("Could not write key file: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
