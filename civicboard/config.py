# civicboard/config.py
"""Environment-driven settings.

Values are read once at import. The reference timezone is only stored here as
raw text; callers resolve it with `lifecycle.resolve_timezone` and pass the
result down explicitly.
"""
import os
from dotenv import load_dotenv

load_dotenv()

ELASTICSEARCH_NODE = os.getenv("ELASTICSEARCH_NODE", "http://localhost:9200")
ES_INDEX_ALIAS = os.getenv("ES_INDEX_ALIAS", "boards")

REFERENCE_TIMEZONE = os.getenv("REFERENCE_TIMEZONE", "+09:00")

RECLASSIFY_INTERVAL_MINUTES = int(os.getenv("RECLASSIFY_INTERVAL_MINUTES", "5"))
EXPIRED_RETENTION_DAYS = int(os.getenv("EXPIRED_RETENTION_DAYS", "30"))
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "1") == "1"

SEARCH_PAGE_SIZE = int(os.getenv("SEARCH_PAGE_SIZE", "8"))
