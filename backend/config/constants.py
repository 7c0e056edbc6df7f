# backend/config/constants.py

from config.env import PAYMENT_INTENT_TIMEOUT_MINUTES, REFUND_RECOVERY_MINUTES, UNPAID_ORDER_TIMEOUT_HOURS

# -----------------------------
# PAYMENT METHODS
# -----------------------------

GATEWAY_PAYMENT_METHODS = {"card", "gcash"}     # capture/refund through the gateway
MANUAL_PAYMENT_METHODS = {"bank", "cod"}        # recorded by reference only
ALLOWED_PAYMENT_METHODS = GATEWAY_PAYMENT_METHODS | MANUAL_PAYMENT_METHODS

PAYMENT_METHOD_LABELS = {
    "gcash": "GCash",
    "card": "Credit/Debit Card",
    "bank": "Bank Transfer",
    "cod": "Cash on Delivery",
}

# -----------------------------
# MONEY
# -----------------------------

MINOR_UNITS_PER_MAJOR = 100
AMOUNT_TOLERANCE = "0.01"             # max |paid - total| in major units
CURRENCY_SYMBOLS = {"PHP": "₱", "USD": "$", "INR": "₹"}

# -----------------------------
# TIMEOUTS / SWEEPS
# -----------------------------

PAYMENT_SWEEP_INTERVAL_SECONDS = 60 * 5     # every 5 minutes
PAYMENT_TIMEOUT_REASON = "PAYMENT_TIMEOUT"
UNPAID_TIMEOUT_REASON = "UNPAID_ORDER_TIMEOUT"

# -----------------------------
# GATEWAY SETTLEMENT
# -----------------------------

FINAL_PHASE_ATTEMPTS = 3                    # re-lock attempts after a gateway call succeeded
COMPENSATION_REFUND_REASON = "order changed while payment was being captured"
