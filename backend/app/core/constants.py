"""Application-wide constants for the Tipu booking platform."""

from datetime import timedelta

# Brand Configuration
BRAND_NAME = "Tipu"
SUPPORT_EMAIL = "support@tipu.co.uk"

# API Documentation
API_TITLE = f"{BRAND_NAME} API"
API_DESCRIPTION = f"Backend API for {BRAND_NAME} - booking lifecycle and payment scheduling"
API_VERSION = "1.0.0"

# CORS
ALLOWED_ORIGINS = ["http://localhost:3000", "https://tipu.co.uk", "https://www.tipu.co.uk"]

# Lesson duration constraints
MIN_LESSON_DURATION = 15  # minutes
MAX_LESSON_DURATION = 300  # minutes (5 hours)
DEFAULT_LESSON_DURATION = 60

# Lead-time thresholds for the payment schedule
IMMEDIATE_CHARGE_WINDOW = timedelta(hours=24)
DEFERRED_AUTH_WINDOW = timedelta(days=7)
CAPTURE_LEAD = timedelta(hours=24)

# Role-specific windows
STUDENT_CANCELLATION_WINDOW = timedelta(hours=24)
TUTOR_RESCHEDULE_WINDOW = timedelta(hours=24)

ADULT_AGE = 18

# Text constraints
MIN_REASON_LENGTH = 10
MIN_TOPICS_COVERED_LENGTH = 10
MAX_REASON_LENGTH = 500
MAX_NOTES_LENGTH = 2000

DEFAULT_DECLINE_REASON = "No reason provided"
DEFAULT_CANCELLATION_REASON = "No reason provided"

# Payment messages
PAYMENT_REQUIRES_ACTION_ERROR = "Payment requires additional authentication"
MISSING_PAYMENT_METHOD_ERROR = "Payer has no saved payment method"
