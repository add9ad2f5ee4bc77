import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///./db/listkeeper.db')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

# Scheduling
ENQUEUE_INTERVAL_MINUTES = int(os.getenv('ENQUEUE_INTERVAL_MINUTES', 60))
ENQUEUE_PAGE_SIZE = int(os.getenv('ENQUEUE_PAGE_SIZE', 100))
PRUNE_INTERVAL_HOURS = int(os.getenv('PRUNE_INTERVAL_HOURS', 6))

# Retention
SNAPSHOT_TTL_DAYS = int(os.getenv('SNAPSHOT_TTL_DAYS', 30))
EVENT_TTL_DAYS = int(os.getenv('EVENT_TTL_DAYS', 90))

# Snapshot blobs are written below this directory
SNAPSHOTS_DIR = os.getenv('SNAPSHOTS_DIR', 'db/snapshots')

# External directory service (Twitter API v2 compatible)
DIRECTORY_API_URL = os.getenv('DIRECTORY_API_URL', 'https://api.twitter.com/2')
DIRECTORY_BEARER_TOKEN = os.getenv('DIRECTORY_BEARER_TOKEN', '')
DIRECTORY_TIMEOUT_SECONDS = float(os.getenv('DIRECTORY_TIMEOUT_SECONDS', 10))
DIRECTORY_PAGE_SIZE = int(os.getenv('DIRECTORY_PAGE_SIZE', 1000))

# Fetcher limits per invocation
FETCH_MAX_PAGES = int(os.getenv('FETCH_MAX_PAGES', 15))
FETCH_TIME_BUDGET_SECONDS = float(os.getenv('FETCH_TIME_BUDGET_SECONDS', 840))
FETCH_MAX_ATTEMPTS = int(os.getenv('FETCH_MAX_ATTEMPTS', 3))
FETCH_BACKOFF_SECONDS = float(os.getenv('FETCH_BACKOFF_SECONDS', 2))
FETCH_PROGRESS_MAX_AGE_HOURS = int(os.getenv('FETCH_PROGRESS_MAX_AGE_HOURS', 24))
# Longest a follower lookup may wait on a rate limit before the diff is rescheduled
LOOKUP_MAX_WAIT_SECONDS = float(os.getenv('LOOKUP_MAX_WAIT_SECONDS', 60))

# Event bus
BUS_WORKERS = int(os.getenv('BUS_WORKERS', 4))
BUS_MAX_DELIVERIES = int(os.getenv('BUS_MAX_DELIVERIES', 3))
BUS_REDELIVERY_BACKOFF_SECONDS = float(os.getenv('BUS_REDELIVERY_BACKOFF_SECONDS', 5))

# Notifications
SLACK_USERNAME = os.getenv('SLACK_USERNAME', 'Listkeeper')
SLACK_ICON_URL = os.getenv('SLACK_ICON_URL', '')
TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN', '')
NOTIFY_TIMEOUT_SECONDS = float(os.getenv('NOTIFY_TIMEOUT_SECONDS', 10))

# Access layer
# Identity subjects look like 'twitter|12345'; the bare id is the primary key.
AUTH_PROVIDER_PREFIX = os.getenv('AUTH_PROVIDER_PREFIX', 'twitter|')
LATEST_EVENTS_LIMIT = int(os.getenv('LATEST_EVENTS_LIMIT', 100))
