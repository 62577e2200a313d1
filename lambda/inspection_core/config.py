"""
Configuration for the inspection confidence engine.

All thresholds, weights, and lookup tables in one place.
Change here, not in business logic modules.
"""

import os

# --- Logging ---

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

# --- Quality Issue Thresholds ---

SHARPNESS_MIN: float = 0.5
BRIGHTNESS_LOW: float = 0.3
BRIGHTNESS_HIGH: float = 0.8
BRIGHTNESS_OPTIMAL: float = 0.55
CONTRAST_MIN: float = 0.3
NOISE_MAX: float = 0.6
RESOLUTION_MIN: float = 0.5
OBJECT_COVERAGE_MIN: float = 0.3
COMPRESSION_MIN: float = 0.3

# Severity of a normalized "goodness" score: >= MINOR is minor, >= MAJOR is major
SEVERITY_MINOR_FROM: float = 0.7
SEVERITY_MAJOR_FROM: float = 0.4

# Metrics overall score considered fit for the vision model
ANALYSIS_ACCEPTABLE_QUALITY: float = 0.4

# --- Confidence Scoring ---

CONFIDENCE_WEIGHTS: dict[str, float] = {
    "image_quality": 0.30,
    "model_reliability": 0.25,
    "contextual": 0.20,
    "historical": 0.15,
    "complexity": 0.10,  # subtracted
}

MODEL_RELIABILITY: dict[str, float] = {
    "SIMPLE": 0.95,
    "MODERATE": 0.85,
    "COMPLEX": 0.75,
    "EXTREME": 0.60,
}

COMPLEXITY_PENALTY: dict[str, float] = {
    "SIMPLE": 0.05,
    "MODERATE": 0.15,
    "COMPLEX": 0.25,
    "EXTREME": 0.40,
}

CONTEXTUAL_BASE: float = 0.5

CONTEXTUAL_ADJUSTMENTS: dict[str, float] = {
    "has_reference_model": 0.25,
    "good_lighting_conditions": 0.20,
    "stable_environment": 0.10,
    "has_reflective_surfaces": -0.15,
    "poor_angle": -0.20,
    "background_noise": -0.10,
}

HISTORICAL_DEFAULT: float = 0.5

# Decision thresholds on overall confidence
RELIABLE_CONFIDENCE: float = 0.70
HUMAN_REVIEW_BELOW: float = 0.50

CONFIDENCE_LEVEL_FLOORS: dict[str, float] = {
    "VERY_HIGH": 0.9,
    "HIGH": 0.7,
    "MEDIUM": 0.5,
    "LOW": 0.3,
    "VERY_LOW": 0.0,
}

# --- Feedback ---

FLOAT_TOLERANCE: float = 1e-9

ACCURATE_DEVIATION: float = 0.10
MODERATE_DEVIATION: float = 0.20
INACCURATE_DEVIATION: float = 0.30

FEEDBACK_TYPE_WEIGHTS: dict[str, float] = {
    "POSITIVE": 1.0,
    "NEGATIVE": 1.5,
    "MIXED": 1.2,
}

ACCURATE_CONFIDENCE_MULTIPLIER: float = 1.3
INACCURATE_CONFIDENCE_MULTIPLIER: float = 0.8
DETAILED_COMMENT_MULTIPLIER: float = 1.1
DETAILED_COMMENT_MIN_LENGTH: int = 20

ACCURACY_SCORES: dict[str, float] = {
    "EXCELLENT": 1.0,
    "GOOD": 0.75,
    "ACCEPTABLE": 0.6,
    "POOR": 0.3,
    "VERY_POOR": 0.1,
}

# Keyword families scanned in reported issue text (lower-case substrings)
ISSUE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "BLUR_DETECTION": ("blur", "out of focus", "unsharp", "fuzzy"),
    "LIGHTING_ASSESSMENT": ("light", "dark", "bright", "shadow", "glare", "exposure"),
    "DEFECT_DETECTION": ("missing", "missed", "defect", "not detected", "false positive"),
}

PERFORMANCE_RECENT_DEFAULT: float = 0.7
PERFORMANCE_RECENT_DECAY: float = 0.8

COMMON_ISSUES_LIMIT: int = 5
IMPROVEMENT_AREA_SHARE: float = 0.1

# --- Lifecycle ---

IMPROVEMENT_THRESHOLD: float = 0.6
RECORD_VERSION: str = "1.0.0"
APP_VERSION: str = os.environ.get("APP_VERSION", "1.0.0")
PLATFORM: str = "aws-lambda"

# --- Stored Images ---

JPEG_QUALITY: dict[str, int] = {
    "LOW": 90,
    "MEDIUM": 75,
    "HIGH": 50,
}
HIGH_COMPRESSION_MAX_SIDE: int = 1280

# --- Storage ---

ANALYSIS_TABLE: str = os.environ.get("ANALYSIS_TABLE", "inspection_analyses")
PERFORMANCE_TABLE: str = os.environ.get("PERFORMANCE_TABLE", "inspection_model_performance")
USER_INDEX: str = os.environ.get("USER_INDEX", "user_id-created_at-index")
HISTORY_WRITE_ATTEMPTS: int = 3

# --- Image Storage ---

IMAGE_BUCKET: str = os.environ.get("IMAGE_BUCKET", "inspection-analysis-images")
IMAGE_PREFIX: str = os.environ.get("IMAGE_PREFIX", "analyses")
