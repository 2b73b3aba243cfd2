import os

from dotenv import load_dotenv

load_dotenv()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")

# LLM configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "auto")
LLM_DEFAULT_TIER = os.getenv("LLM_DEFAULT_TIER", "fast")
LLM_MODEL_FAST = os.getenv("LLM_MODEL_FAST", "")
LLM_MODEL_STANDARD = os.getenv("LLM_MODEL_STANDARD", "")
LLM_MODEL_HIGH = os.getenv("LLM_MODEL_HIGH", "")

# Bounded wait for a single model call, and max in-flight calls per process
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_MAX_CONCURRENT = int(os.getenv("LLM_MAX_CONCURRENT", "5"))

# Tier 1 rule thresholds (policy data, overridable per deployment)
LAB_CRITICAL_FACTOR = float(os.getenv("LAB_CRITICAL_FACTOR", "1.5"))
TREND_STABLE_THRESHOLD_PERCENT = float(os.getenv("TREND_STABLE_THRESHOLD_PERCENT", "5"))
CORRELATION_WINDOW_DAYS = int(os.getenv("CORRELATION_WINDOW_DAYS", "365"))  # 0 = unbounded

# Health snapshot: at or below this many Tier 1 insights, skip the model call
SNAPSHOT_MAX_INSIGHTS = int(os.getenv("SNAPSHOT_MAX_INSIGHTS", "5"))
