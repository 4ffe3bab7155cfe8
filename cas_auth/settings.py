import json
import logging
import os
from typing import Dict

from .config import CasSourceConfig
from .core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("CAS_AUTH_DATABASE_URL", "sqlite:///data/database.db")

# JSON file of authsources: {"<auth_id>": {"cas": {...}, "ldap": {...}}}
AUTHSOURCES_FILE = os.getenv("CAS_AUTH_SOURCES_FILE", "config/authsources.json")

# Public URL of the linkback endpoint, when it differs from what the app sees
# behind a proxy. Defaults to the URL of the linkback route.
LINKBACK_URL = os.getenv("CAS_AUTH_LINKBACK_URL")

COOKIE_NAME = os.getenv("CAS_AUTH_COOKIE_NAME", "cas_session")


def load_authsources(path: str = None) -> Dict[str, CasSourceConfig]:
    """
    Read the authsources file. Entries without a "cas" block (directory
    sources, for instance) are skipped. Invalid CAS entries fail fast.
    """
    path = path or AUTHSOURCES_FILE
    if not os.path.exists(path):
        logger.warning("Authsources file %s not found, no CAS sources configured", path)
        return {}

    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a JSON object of authsources")

    sources = {}
    for auth_id, entry in raw.items():
        if not isinstance(entry, dict) or "cas" not in entry:
            continue
        try:
            sources[auth_id] = CasSourceConfig.from_authsource(entry)
        except ConfigurationError as e:
            raise ConfigurationError(f"Authentication source {auth_id!r}: {e.message}")
    return sources
