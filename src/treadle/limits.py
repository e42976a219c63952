"""Numeric limits and timeouts - no circular dependencies."""

from __future__ import annotations

DEFAULT_MAX_ITERATIONS = 10

DEFAULT_BASE_BACKOFF_MS = 5000
DEFAULT_MAX_BACKOFF_MS = 60000
DEFAULT_BACKOFF_MULTIPLIER = 3.0
DEFAULT_RATE_LIMIT_RETRIES = 3
DEFAULT_RECOVERY_PROBE_TIMEOUT_MS = 5000

DEFAULT_ERROR_RETRIES = 3
DEFAULT_ERROR_RETRY_DELAY_MS = 5000

AGENT_DETECT_TIMEOUT = 15.0
INTERRUPT_GRACE_SECONDS = 5.0
KILL_GRACE_SECONDS = 2.0

OUTPUT_CHANNEL_SIZE = 256
OUTPUT_READ_CHUNK = 4096
OUTPUT_TAIL_CHARS = 20000
STDERR_TAIL_CHARS = 16000

EVENT_QUEUE_SIZE = 1000
REMOTE_EVENT_QUEUE_SIZE = 500

MAX_LOG_MESSAGE_LENGTH = 4096
MAX_LINE_BYTES = 4 * 1024 * 1024
