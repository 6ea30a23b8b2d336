"""Constants for GUI agents: model coordinate space, loop limits, action names."""

# ---------------------------------------------------------------------------
# Coordinate space
# ---------------------------------------------------------------------------
DEFAULT_FACTORS = (1000, 1000)  # model-native units per screen axis

# Image sizing for the v1.5 model family
MAX_RATIO = 200
IMAGE_FACTOR = 28
MIN_PIXELS = 100 * 28 * 28
MAX_PIXELS_V1_5 = 16384 * 28 * 28

MODEL_VERSION_1_0 = "1.0"
MODEL_VERSION_1_5 = "1.5"

# ---------------------------------------------------------------------------
# Loop limits
# ---------------------------------------------------------------------------
MAX_LOOP_COUNT = 100
MAX_SNAPSHOT_ERR_CNT = 10
SNAPSHOT_RETRY_DELAY_SECONDS = 1.0
MAX_IMAGE_LENGTH = 5

# ---------------------------------------------------------------------------
# Actuation
# ---------------------------------------------------------------------------
WAIT_ACTION_SECONDS = 5.0
SCROLL_AMOUNT = 5 * 100

# Actions the loop handles itself, before or after the operator runs
ACTION_FINISHED = "finished"
ACTION_CALL_USER = "call_user"
ACTION_ERROR_ENV = "error_env"
ACTION_USER_STOP = "user_stop"
ACTION_MAX_LOOP = "max_loop"

ACTION_SPACES = [
    "click(start_box='[x1, y1, x2, y2]')",
    "left_double(start_box='[x1, y1, x2, y2]')",
    "right_single(start_box='[x1, y1, x2, y2]')",
    "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
    "hotkey(key='')",
    "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
    "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
    "wait() #Sleep for 5s and take a screenshot to check for any changes.",
    "finished()",
    "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
]
