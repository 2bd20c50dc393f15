from dotenv import load_dotenv, find_dotenv
import json
import os
from functools import lru_cache

# Load .env files for local development
# override=False: real environment variables (set by the host) take precedence
load_dotenv(dotenv_path="default.env", override=False)
load_dotenv(dotenv_path=find_dotenv(".env"), override=False)


# Apple signing keys trusted for S2S notifications. Overridden with APPLE_JWKS
# (inline JSON) or APPLE_JWKS_PATH (file) so keys can rotate without a deploy.
DEFAULT_APPLE_JWKS = {
    "keys": [
        {
            "kty": "RSA",
            "kid": "rs0M3kOV9p",
            "use": "sig",
            "alg": "RS256",
            "n": "zH5so3zLsgmRypxAAYJimfF9cx3ISSyHyzjDP3yvE9ieqpnjFJhzgCP8L4oKO9vUFNpoG1ub7I3paYNY6Vb2yc4chnsjJxB3j0jomJ3iI9MlWoVecTFG2tywyx5NRhy3YfTUpw2uCLafzWrpIJIoKUCGM6iUgaIFjvfi-cGT5T_5eUSWZHN-ziH69mGcbMRGLQEixQUatwru9i4i-OSk-w-JmLOqAzRP1mVn1tcZRIoGSB2PFSSJX9SK90OX8i5sj7dpIO_2xbGMtyNJkDzGq88x1pMJ4sv6HMj-tx4QrpGDbUi7zBCgbBnNSGSB_LBv4dbswwWY96ckHgx9yf_7IQ",
            "e": "AQAB",
        },
        {
            "kty": "RSA",
            "kid": "E6q83RB15n",
            "use": "sig",
            "alg": "RS256",
            "n": "qD2kjZNSBESRVJksHHnDpMPprhCymecPO8Ji6xlY_fGdUOioVf0nckGaiBwjPGo3xKadAGvbNJ1BjCZOmbLL7lQ5mT8fI6l5HaY8txcz3_PjOUHdiXBuThmQ2eEXtmOtRxi3LNnXaOCpl7QxHgyiPTVgJpJ18Teqz2ESVXg_Lpmw7ot3zBI0p9E56-HVZwxpwS8EoN53nx850fxAlpZj5d1szgV8YzhcRG-8FMOialu-me0OFZWghB-_jCMfdBhWHMWpGkfLPDA1o8eLkr0UByZwMHKCWA--JUvlKvSv3xavDD7ILj8t5PiItonVV9telbza-ToaOWMiG5gZ5QfWDQ",
            "e": "AQAB",
        },
        {
            "kty": "RSA",
            "kid": "Sf2lFqwkpX",
            "use": "sig",
            "alg": "RS256",
            "n": "oNe3ZKHU5-fnmbjhCamUpBSyLkR4jbQy-PCZU4cr7tyPcFokyZ1CjSGm44sw3EPONWO6bWgKZYBX2UPv7UM3GBIuB8qBkkN0_vu0Kdr8KUWJ-6m9fnKgceDil4K4TsSS8Owe9qnP9XjjmVRK7cCEjew4GYqQ7gRcHUjIQ-PrKkNBOOijxLlwckeQK2IN9WS_CBXVMleXLutfYAHpwr2KoAmt5BQvPFqBegozHaTc2UvarcUPKMrl-sjY_AXobH7NjqfbBLRJLzS2EzE4y865QiBpwwdhlK4ZQ3g1DCV57BDKvoBX0guCDNSFvoPuIjMmTxZEUbwrJ1CQ4Ib5j4VCkQ",
            "e": "AQAB",
        },
    ]
}


def _load_apple_jwks() -> dict:
    """Resolve the trusted JWKS document: inline JSON, then file, then default."""
    inline = os.getenv("APPLE_JWKS")
    if inline:
        return json.loads(inline)

    path = os.getenv("APPLE_JWKS_PATH")
    if path:
        with open(path) as f:
            return json.load(f)

    return DEFAULT_APPLE_JWKS


class Settings:
    # Database - PostgreSQL in production (Render sets DATABASE_URL), SQLite for local runs
    POSTGRES_URI: str = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI", "sqlite:///./entitlements.db")

    # JWT settings for bearer authentication of the receipt endpoint
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    ALGORITHM: str = "HS256"

    # Apple S2S notification trust root
    APPLE_JWKS: dict = _load_apple_jwks()

    # Apple verifyReceipt settings
    APPLE_SHARED_SECRET: str = os.getenv("APPLE_SHARED_SECRET", "")
    APPLE_VERIFY_RECEIPT_URL: str = os.getenv("APPLE_VERIFY_RECEIPT_URL", "https://buy.itunes.apple.com/verifyReceipt")
    APPLE_SANDBOX_VERIFY_RECEIPT_URL: str = os.getenv(
        "APPLE_SANDBOX_VERIFY_RECEIPT_URL", "https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # The single auto-renewing subscription product this engine monitors
    SUBSCRIPTION_PRODUCT_ID: str = os.getenv("SUBSCRIPTION_PRODUCT_ID", "premium_pass_monthly")
    SUBSCRIPTION_TOKEN_GRANT: int = int(os.getenv("SUBSCRIPTION_TOKEN_GRANT", "150000"))
    SUBSCRIPTION_PERIOD_DAYS: int = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))

    # Token ledger / realtime broadcast collaborator
    LEDGER_URL: str = os.getenv("LEDGER_URL", "")
    LEDGER_SERVICE_KEY: str = os.getenv("LEDGER_SERVICE_KEY", "")

    # Outbound HTTP timeout for Apple and the ledger (no automatic retries)
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # How long a redelivered notification waits before re-running side effects
    # that an earlier delivery claimed but never completed
    SIDE_EFFECT_RETRY_AFTER_SECONDS: int = int(os.getenv("SIDE_EFFECT_RETRY_AFTER_SECONDS", "300"))


@lru_cache()
def get_settings():
    return Settings()

