from typing import Dict, Any, Optional
from pathlib import Path
import json
import structlog

logger = structlog.get_logger(__name__)


class FileCredentialStore:
    """Persists transport session credentials as a single JSON blob"""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        """Return stored credentials, or None when the session must be provisioned"""

        if not self.path.exists():
            logger.info("No stored credentials", path=str(self.path))
            return None

        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            # Unreadable credentials are re-provisioned on connect
            logger.error("Failed to read stored credentials", path=str(self.path), error=str(e))
            return None

    def save(self, credentials: Dict[str, Any]) -> None:
        """Atomically replace the stored credentials"""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(credentials), encoding="utf-8")
        tmp_path.replace(self.path)

        logger.info("Credentials saved", path=str(self.path))
