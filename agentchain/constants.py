DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 60
MAX_AUTO_ITERATIONS = 100
DEFAULT_TASK_TOPIC = "agentchain.tasks"
EXECUTE_CHAIN_STEP = "execute_chain_step"
OUTBOX_LIMIT = 500
PROCESSED_HISTORY = 1000
CANCELLED_BATCH_HISTORY = 1000
