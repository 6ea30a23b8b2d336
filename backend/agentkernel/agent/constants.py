"""Constants for the agent runtime.

Single source of truth for the magic numbers used across the loop, the
tool-call engines, the LLM client and the cancellation guard.
"""

# ---------------------------------------------------------------------------
# Loop limits
# ---------------------------------------------------------------------------
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TOOL_CONCURRENCY = 4

MAX_ITERATIONS_MESSAGE = (
    "Sorry, I could not complete this task. Maximum iterations reached."
)
ABORTED_MESSAGE = "Request was aborted"

# ---------------------------------------------------------------------------
# Finish reasons
# ---------------------------------------------------------------------------
FINISH_REASON_STOP = "stop"
FINISH_REASON_TOOL_CALLS = "tool_calls"
FINISH_REASON_ABORT = "abort"
FINISH_REASON_MAX_ITERATIONS = "max_iterations"
FINISH_REASON_ERROR = "error"

# ---------------------------------------------------------------------------
# Tool results
# ---------------------------------------------------------------------------
TOOL_NOT_FOUND_ERROR = "tool not found"
TOOL_ABORTED_ERROR = "aborted"
TOOL_MISSING_RESULT_ERROR = "no result recorded for this tool call"

# ---------------------------------------------------------------------------
# Conversation projection
# ---------------------------------------------------------------------------
IMAGE_OMITTED_PLACEHOLDER = "[Image omitted to conserve context]"
PLAN_FOLLOW_INSTRUCTION = "Follow this plan. If a step is done, move to the next step."

# ---------------------------------------------------------------------------
# Structured outputs
# ---------------------------------------------------------------------------
STRUCTURED_SCHEMA_NAME = "agent_response_schema"

# ---------------------------------------------------------------------------
# LLM retry
# ---------------------------------------------------------------------------
LLM_MAX_RETRIES = 3
LLM_RETRY_BASE_DELAY_SECONDS = 1.0
LLM_RETRY_MAX_DELAY_SECONDS = 15.0
LLM_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
LLM_TIMEOUT_SECONDS = 120.0
LLM_CONNECT_TIMEOUT_SECONDS = 10.0

# ---------------------------------------------------------------------------
# Provider defaults (all speak the OpenAI wire protocol)
# ---------------------------------------------------------------------------
PROVIDER_BASE_URLS = {
    "ollama": "http://127.0.0.1:11434/v1",
    "lm-studio": "http://127.0.0.1:1234/v1",
    "volcengine": "https://ark.cn-beijing.volces.com/api/v3",
    "deepseek": "https://api.deepseek.com/v1",
}
PROVIDER_PLACEHOLDER_API_KEYS = {
    "ollama": "ollama",
    "lm-studio": "lm-studio",
}
