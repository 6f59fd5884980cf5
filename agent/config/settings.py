"""
Configuration constants for the protocol scheduling engine
"""
import os
import logging
from dotenv import load_dotenv

# Look for .env in the agent directory (parent of this config directory)
current_file_dir = os.path.dirname(__file__)  # config/
agent_dir = os.path.dirname(current_file_dir)  # agent/
dotenv_path = os.path.join(agent_dir, '.env')
env_loaded = load_dotenv(dotenv_path)

logger = logging.getLogger("protocol-config")
logger.debug(f"Environment loading: .env path={dotenv_path}, exists={os.path.exists(dotenv_path)}, loaded={env_loaded}")

# Recurrence defaults
PROTOCOL_HORIZON_DAYS = int(os.getenv("PROTOCOL_HORIZON_DAYS", "200"))  # days past the anchor date
PROTOCOL_MONTHLY_INTERVAL_DAYS = int(os.getenv("PROTOCOL_MONTHLY_INTERVAL_DAYS", "30"))  # fixed, not calendar-aware

# Storage
PROTOCOL_KEY_PREFIX = os.getenv("PROTOCOL_KEY_PREFIX", "protocols")

# Background processing
PROTOCOL_QUEUE_NAME = os.getenv("PROTOCOL_QUEUE_NAME", "protocol_sync")
RECHECK_INTERVAL_SECONDS = int(os.getenv("RECHECK_INTERVAL_SECONDS", "3600"))

# Calendar
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

# Process
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
HEALTH_PORT = int(os.getenv("HEALTH_PORT", "8081"))

# Bundled protocol templates
TEMPLATES_DIR = os.getenv("PROTOCOL_TEMPLATES_DIR", os.path.join(agent_dir, "protocol_templates"))

if PROTOCOL_HORIZON_DAYS <= 0:
    logger.warning(f"PROTOCOL_HORIZON_DAYS={PROTOCOL_HORIZON_DAYS} is not positive, using 200")
    PROTOCOL_HORIZON_DAYS = 200

if PROTOCOL_MONTHLY_INTERVAL_DAYS <= 0:
    logger.warning(f"PROTOCOL_MONTHLY_INTERVAL_DAYS={PROTOCOL_MONTHLY_INTERVAL_DAYS} is not positive, using 30")
    PROTOCOL_MONTHLY_INTERVAL_DAYS = 30
