"""Centralized billing constants: single source of truth for hardcoded values."""

# --- MercadoPago ---
MERCADOPAGO_API_URL = "https://api.mercadopago.com"
MERCADOPAGO_PAYMENT_PATH = "/v1/payments/{payment_id}"
GATEWAY_TIMEOUT = 5  # seconds
WEBHOOK_SIGNATURE_MAX_AGE = 300  # seconds (5 min)

# --- HTTP Client ---
HTTP_TOTAL_TIMEOUT = 30  # seconds
HTTP_CONNECT_TIMEOUT = 5  # seconds

# --- Subscription dunning ---
SUBSCRIPTION_GRACE_DAYS = 3
SUSPEND_AFTER_FAILURES = 3
FAILURE_SCAN_WINDOW = 10  # most recent payments inspected
BILLING_PERIOD_MONTHS = 1

# --- Late payment penalties ---
PENALTY_GRACE_DAYS = 2
PENALTY_BASE_RATE = "0.05"  # 5%
PENALTY_DAILY_RATE = "0.005"  # 0.5% per day late
PENALTY_MAX_RATE = "0.50"  # 50% cap

# --- Reminders ---
REMINDER_DAYS = (7, 3, 1)  # days before next billing date

# --- Scheduling ---
BILLING_TIMEZONE = "America/Santiago"
REMINDERS_CRON = {"hour": 9, "minute": 0}
PENALTIES_CRON = {"hour": 9, "minute": 30}
GRACE_PERIODS_CRON = {"hour": 10, "minute": 0}

# --- Worker ---
ARQ_MAX_JOBS = 10
ARQ_JOB_TIMEOUT = 600  # seconds (10 min)

# --- Notifications ---
NOTIFICATION_MAX_TRIES = 3
NOTIFICATION_RETRY_BASE_SECONDS = 1
NOTIFICATION_TYPE_PAYMENT_SUCCESS = "payment_success"
NOTIFICATION_TYPE_SUBSCRIPTION_ACTIVATED = "subscription_activated"
NOTIFICATION_TYPE_PAYMENT_FAILED = "payment_failed"
NOTIFICATION_TYPE_PAYMENT_OVERDUE = "payment_overdue"
NOTIFICATION_TYPE_SUBSCRIPTION_SUSPENDED = "subscription_suspended"
NOTIFICATION_TYPE_PAYMENT_REMINDER = "payment_reminder"
