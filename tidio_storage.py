import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

Credentials = Dict[str, Any]


class CredentialStore:
    """Single-user credential record kept as a JSON file.

    There is no in-memory cache: every call goes back to disk, and there is no
    locking, so only one writer is expected at a time.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def load(self) -> Optional[Credentials]:
        """Return the stored record, or None if it is missing or unreadable."""
        try:
            if not self.path.exists():
                return None
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring unreadable credentials file {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            return None
        return data

    def save(self, public_key: str, access_token: str, refresh_token: str, site_url: str) -> Credentials:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        existing = self.load() or {}
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "public_key": public_key,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "site_url": site_url,
            "created_at": existing.get("created_at") or now,
            "updated_at": now,
        }
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
        logger.info(f"Saved Tidio credentials to {self.path}")
        return record

    def clear(self) -> bool:
        try:
            if self.path.exists():
                with open(self.path, "w", encoding="utf-8") as f:
                    f.write("{}")
        except OSError as e:
            logger.warning(f"Could not clear credentials file {self.path}: {e}")
            return False
        return True

    def has_valid(self) -> bool:
        creds = self.load()
        return creds is not None and bool(creds.get("public_key")) and bool(creds.get("refresh_token"))
