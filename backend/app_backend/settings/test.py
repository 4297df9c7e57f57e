from .settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
        # Writers queue on BEGIN instead of failing mid-transaction
        "OPTIONS": {"transaction_mode": "IMMEDIATE"},
        # A shared-cache memory database reports "table is locked" to
        # concurrent writers rather than waiting, so tests get a file
        "TEST": {"NAME": str(BASE_DIR / "test_db.sqlite3")},  # noqa: F405
    }
}

CHANNEL_LAYERS = {
    "default": {"BACKEND": "channels.layers.InMemoryChannelLayer"},
}

CACHES = {
    "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"},
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"

ROUTING_ENABLED = False
PRICING_CONFIG_PROVIDER = "services.pricing.config.database_pricing_provider"

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
LOGGING["root"]["level"] = "WARNING"  # noqa: F405
