"""Centralized configuration for the clinical evidence pipeline."""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# --- Service URLs ---
PLOS_API_URL = os.environ.get("PLOS_API_URL", "https://api.plos.org/search")
SPRINGER_API_URL = os.environ.get("SPRINGER_API_URL", "https://api.springernature.com/metadata/json")
TRIP_API_URL = os.environ.get("TRIP_API_URL", "https://www.tripdatabase.com/api/search")
PUBMED_BASE_URL = os.environ.get("PUBMED_BASE_URL", "https://eutils.ncbi.nlm.nih.gov/entrez/eutils")

# --- API Keys ---
SPRINGER_API_KEY = os.environ.get("SPRINGER_API_KEY", "")
TRIP_API_KEY = os.environ.get("TRIP_API_KEY", "")
PUBMED_API_KEY = os.environ.get("PUBMED_API_KEY", "")

# --- Timeouts (seconds) ---
HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "30"))
ADAPTER_TIMEOUT = float(os.environ.get("ADAPTER_TIMEOUT", "45"))

# --- Rate limits (requests per rolling minute, per adapter) ---
PLOS_REQUESTS_PER_MINUTE = int(os.environ.get("PLOS_REQUESTS_PER_MINUTE", "10"))
SPRINGER_REQUESTS_PER_MINUTE = int(os.environ.get("SPRINGER_REQUESTS_PER_MINUTE", "100"))
TRIP_REQUESTS_PER_MINUTE = int(os.environ.get("TRIP_REQUESTS_PER_MINUTE", "100"))
PUBMED_REQUESTS_PER_MINUTE = int(os.environ.get("PUBMED_REQUESTS_PER_MINUTE", "180"))
RATE_LIMIT_WINDOW = 60.0

# --- HTTP ---
USER_AGENT = "ClinicalEvidence/1.0"

# --- Screening Thresholds ---
QUALITY_THRESHOLD = 40
RELEVANCE_THRESHOLD = 30
HIGH_QUALITY_SCORE = 80

# --- Search Defaults ---
DEFAULT_MAX_RESULTS = 50
MAX_QUERY_LENGTH = 1000

# --- Screening Log Retention ---
LOG_RETENTION_DAYS = int(os.environ.get("LOG_RETENTION_DAYS", "30"))
MAX_STORED_LOGS = int(os.environ.get("MAX_STORED_LOGS", "500"))

# --- Evidence Gap Analysis ---
RECENT_YEARS_WINDOW = 2

# --- Data Tables ---
DATA_DIR = Path(os.environ.get("CLINICAL_EVIDENCE_DATA_DIR", Path(__file__).parent / "data"))
