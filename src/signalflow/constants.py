"""Centralized constants for SignalFlow."""

# Urgency keywords that trigger immediate batch dispatch
URGENCY_KEYWORDS = ("urgent", "critical", "emergency", "asap", "immediate")

# Rate limiting window (seconds)
RATE_WINDOW_SECONDS = 60.0

# Confidence below which a stage result is considered unreliable
LOW_CONFIDENCE_THRESHOLD = 0.5

# Per-error confidence decay applied by the pipeline
ERROR_CONFIDENCE_DECAY = 0.9

# Batch savings model (tokens and milliseconds per oracle call)
TOKENS_PER_INDIVIDUAL_CALL = 500
TOKENS_BATCH_OVERHEAD = 300
TOKENS_PER_BATCHED_SIGNAL = 200
MS_PER_INDIVIDUAL_CALL = 2000

# Bounded histories
BATCH_HISTORY_LIMIT = 100
PROCESSING_TIME_SAMPLES = 100

# Snapshot format
CLASSIFICATION_SNAPSHOT_VERSION = "1.0"

# Characters of body used for duplicate detection
DEDUP_BODY_CHARS = 200
