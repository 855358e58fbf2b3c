"""Tunable constants shared by the challenge service and the widget client."""

# ------------------------------------------------------------------
# Challenge catalogue
# ------------------------------------------------------------------
CHALLENGE_TYPES = ("text", "image_selection", "pattern", "semantic")
# Legacy template names -> canonical type
TYPE_ALIASES = {"image": "image_selection"}
DIFFICULTIES = ("easy", "medium", "hard")
DEFAULT_CHALLENGE_TYPE = "text"
DEFAULT_DIFFICULTY = "medium"

SYNTHETIC_ID_PREFIX = "synthetic"

# ------------------------------------------------------------------
# Telemetry (client)
# ------------------------------------------------------------------
# 1 in 10 raw mousemove events is kept; risk thresholds below are tuned
# against this rate.
MOUSE_SAMPLE_EVERY = 10
MOUSE_POSITIONS_CAPACITY = 100
CLICK_PATTERN_CAPACITY = 20
KEY_TIMINGS_CAPACITY = 30

# ------------------------------------------------------------------
# Risk scoring
# ------------------------------------------------------------------
NEUTRAL_RISK = 0.5
MOUSE_MIN_POSITIONS = 5
CLICK_MIN_SAMPLES = 3
KEY_MIN_SAMPLES = 5

STRAIGHT_ANGLE_EPSILON = 0.1  # rad
ANGLE_VARIANCE_CAP = 0.1
CLICK_VARIANCE_SCALE_MS2 = 10_000.0
KEY_VARIANCE_SCALE_MS2 = 5_000.0

MOUSE_WEIGHT = 0.4
CLICK_WEIGHT = 0.3
KEY_WEIGHT = 0.3

CONFIDENCE_SAMPLE_SCALE = 50

# Invisible pass-through happens strictly below this client score
INVISIBLE_SCORE_THRESHOLD = 0.3

# ------------------------------------------------------------------
# Server-side invisible verification
# ------------------------------------------------------------------
SERVER_RISK_PRIOR = 0.6
EMPTY_BEHAVIOR_RISK = 0.9
TAMPERED_BEHAVIOR_RISK = 1.0
ACTIVITY_CREDIT = 0.05
INVISIBLE_ACCEPT_THRESHOLD = 0.4

# ------------------------------------------------------------------
# Network resilience (client)
# ------------------------------------------------------------------
MAX_RETRIES = 3
RETRY_BASE_DELAY_S = 1.0
REQUEST_TIMEOUT_S = 7.0

# ------------------------------------------------------------------
# Widget UI timings
# ------------------------------------------------------------------
PATTERN_REVEAL_STEP_S = 0.6
PATTERN_REVEAL_HOLD_S = 1.0
AUTO_DISMISS_DELAY_S = 1.0

# ------------------------------------------------------------------
# Server
# ------------------------------------------------------------------
STORE_QUERY_TIMEOUT_S = 2.0
TOKEN_TTL_SECONDS = 300
REVEAL_LEDGER_TTL_SECONDS = 600
GENERATE_RATE_LIMIT = "30/minute"
VERIFY_RATE_LIMIT = "60/minute"

# ------------------------------------------------------------------
# Synthetic default content
# ------------------------------------------------------------------
DEFAULT_TEXT_BY_DIFFICULTY = {
    "easy": "ABC123",
    "medium": "RH9X7A",
    "hard": "J7K2#P9",
}

DEFAULT_PATTERN_GRID_BY_DIFFICULTY = {"easy": 3, "medium": 4, "hard": 5}
DEFAULT_PATTERN_SEQUENCE = [0, 4, 8, 5, 2]

DEFAULT_IMAGE_QUESTION = "Select all images containing animals"
DEFAULT_IMAGE_CATEGORY = "animals"
DEFAULT_IMAGES = [
    "https://images.unsplash.com/photo-1530595467517-49740742c05f?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1560807707-8cc77767d783?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1501706362039-c06b2d715385?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1484557985045-edf25e08da73?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1506744038136-46273834b3fb?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1507525428034-b723cf961d3e?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1518173946687-a4c8892bbd9f?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1541746972996-4e0b0f43e02a?w=150&h=150&fit=crop",
    "https://images.unsplash.com/photo-1494976388531-d1058494cdd8?w=150&h=150&fit=crop",
]
DEFAULT_IMAGE_CORRECT_INDICES = [0, 1, 2, 3]
# Injected when stored image content lacks an answer key
IMAGE_FALLBACK_CORRECT_INDICES = [0]

DEFAULT_SEMANTIC_QUESTION = "Which of these is a color?"
DEFAULT_SEMANTIC_OPTIONS = ["Apple", "Blue", "Chair", "Dog"]
DEFAULT_SEMANTIC_CORRECT_INDEX = 1
