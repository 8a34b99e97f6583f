"""Shared constants for client ↔ server communication."""

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8282

# Seconds. Reranking a long candidate list is the slow path.
DEFAULT_TIMEOUT = 120.0

DEFAULT_MAX_BODY_BYTES = 64 * 1024 * 1024

# Seconds between idle-unload sweeps on the server.
IDLE_CHECK_INTERVAL = 60.0

# REST endpoints
EP_HEALTH = "/health"
EP_DEVICE = "/device"
EP_EMBED = "/embed"
EP_EMBED_BATCH = "/embed-batch"
EP_GENERATE = "/generate"
EP_EXPAND_QUERY = "/expand-query"
EP_RERANK = "/rerank"
EP_TOKENIZE = "/tokenize"
EP_COUNT_TOKENS = "/count-tokens"
EP_DETOKENIZE = "/detokenize"
EP_MODEL_EXISTS = "/model-exists"

# Environment
ENV_HOST = "GPURELAY_HOST"
ENV_PORT = "GPURELAY_PORT"
ENV_AUTH_TOKEN = "GPURELAY_AUTH_TOKEN"
ENV_REMOTE_URL = "GPURELAY_REMOTE_URL"
ENV_TIMEOUT = "GPURELAY_TIMEOUT"
ENV_MAX_BODY_BYTES = "GPURELAY_MAX_BODY_BYTES"
ENV_EMBED_MODEL = "GPURELAY_EMBED_MODEL"
ENV_GENERATE_MODEL = "GPURELAY_GENERATE_MODEL"
ENV_RERANK_MODEL = "GPURELAY_RERANK_MODEL"
ENV_IDLE_TIMEOUT = "GPURELAY_IDLE_TIMEOUT"
