from config.settings import *  # noqa: F401,F403
from config.settings import BASE_DIR, LOGGING, REST_FRAMEWORK

# File-backed so that threads in TransactionTestCase share one database.
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "test-db.sqlite3",
        "OPTIONS": {"timeout": 20},
        "TEST": {"NAME": BASE_DIR / "test-db.sqlite3"},
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
STOCK_ALERT_RECIPIENTS = ["stock-alerts@example.com"]
INVENTORY_LOCK_TIMEOUT_SECONDS = 5.0

REST_FRAMEWORK = {
    **REST_FRAMEWORK,
    "DEFAULT_THROTTLE_CLASSES": [],
}

LOGGING = {**LOGGING, "root": {"handlers": ["console"], "level": "WARNING"}}
