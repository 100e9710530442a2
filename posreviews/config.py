import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./posreviews.db")

# Public base URL of this service (used to build inbound webhook URLs)
APP_URL = os.getenv("APP_URL", "http://localhost:8000")

# Master secret for POS credential encryption (generate with: python scripts/generate_encryption_key.py)
POS_TOKEN_ENCRYPTION_KEY = os.getenv("POS_TOKEN_ENCRYPTION_KEY")

# Square Configuration
SQUARE_ENVIRONMENT = os.getenv("SQUARE_ENVIRONMENT", "sandbox")  # sandbox or production
SQUARE_API_VERSION = os.getenv("SQUARE_API_VERSION", "2024-12-18")
SQUARE_WEBHOOK_SIGNATURE_KEY = os.getenv(
    "SQUARE_WEBHOOK_SIGNATURE_KEY"
)  # App-level signature key from Square Dashboard
# Square signs notification_url + body, so this must match the URL registered with Square
SQUARE_WEBHOOK_NOTIFICATION_URL = os.getenv(
    "SQUARE_WEBHOOK_NOTIFICATION_URL", f"{APP_URL}/webhooks/square"
)

# Shopify Configuration
SHOPIFY_API_SECRET = os.getenv("SHOPIFY_API_SECRET")  # App secret, signs all app webhooks

# Clover Configuration
CLOVER_ENVIRONMENT = os.getenv("CLOVER_ENVIRONMENT", "sandbox")
CLOVER_WEBHOOK_AUTH_CODE = os.getenv("CLOVER_WEBHOOK_AUTH_CODE")  # X-Clover-Auth value

# Stripe POS Configuration
STRIPE_API_URL = os.getenv("STRIPE_API_URL", "https://api.stripe.com/v1")
STRIPE_POS_WEBHOOK_SECRET = os.getenv("STRIPE_POS_WEBHOOK_SECRET")  # whsec_... for the Connect endpoint

# Twilio (platform sender for review requests)
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")
TWILIO_MESSAGING_SERVICE_SID = os.getenv("TWILIO_MESSAGING_SERVICE_SID")
TWILIO_TIMEOUT_SECONDS = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))

# Review request dispatch
POS_SMS_DELAY_SECONDS = int(os.getenv("POS_SMS_DELAY_SECONDS", "30"))
SMS_MAX_ATTEMPTS = int(os.getenv("SMS_MAX_ATTEMPTS", "3"))
SMS_RETRY_BASE_DELAY = float(os.getenv("SMS_RETRY_BASE_DELAY", "2.0"))
RECENT_CONTACT_DAYS = int(os.getenv("RECENT_CONTACT_DAYS", "30"))

# Timeout for follow-up lookups against POS provider APIs
POS_API_TIMEOUT_SECONDS = float(os.getenv("POS_API_TIMEOUT_SECONDS", "10"))
