"""Constants for the Cubby integration.

Defines the integration domain, structural limits of the location tree, and
the option keys and defaults used by the config flow and timers.
"""

from datetime import timedelta

# Integration domain used across all modules
DOMAIN: str = "cubby"

# Public integration version (kept in sync with manifest.json)
INTEGRATION_VERSION: str = "0.1.0"

# Deepest level a location may occupy; roots are depth 1
MAX_LOCATION_DEPTH: int = 15

# Separator used in human-readable location paths ("Garage › Shelf › Bin")
PATH_SEPARATOR: str = " › "

# Items whose names are at least this similar are flagged as possible duplicates
DUPLICATE_SIMILARITY_THRESHOLD: float = 0.8

DEFAULT_TAG_COLOR: str = "#007AFF"

# Options
CONF_REVIEW_EXPIRATION_DAYS: str = "review_expiration_days"
DEFAULT_REVIEW_EXPIRATION_DAYS: int = 30
CONF_AUTO_BACKUP: str = "auto_backup"
DEFAULT_AUTO_BACKUP: bool = False

# Timers
REVIEW_SWEEP_INTERVAL: timedelta = timedelta(hours=1)
AUTO_BACKUP_MAX_AGE: timedelta = timedelta(hours=1)

# Directory (under the Home Assistant config dir) holding backup files
BACKUP_DIRECTORY: str = "cubby_backups"
