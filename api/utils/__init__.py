# Identity Service API Utilities
"""
Shared utility functions for the identity service.
"""

from api.utils.datetime_utils import make_aware, utc_now, to_utc_text, parse_utc_text
from api.utils.db_paths import get_contacts_db_path

__all__ = ["make_aware", "utc_now", "to_utc_text", "parse_utc_text", "get_contacts_db_path"]
