import os

# Must run before app.core.settings is imported by any test module.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DB_AUTO_CREATE", "0")
os.environ.setdefault("SCHEDULER_ENABLED", "0")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-length-for-hs256")
os.environ.setdefault("DB_RETRY_DELAY_S", "0.01")
os.environ.setdefault("DB_RETRY_ATTEMPTS", "5")
os.environ.setdefault("LEMONSQUEEZY_API_KEY", "ls-test-key")
os.environ.setdefault("LEMONSQUEEZY_STORE_ID", "1")
os.environ.setdefault("LEMONSQUEEZY_WEBHOOK_SECRET", "whsec-test")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_STARTER", "101")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_CREDITS_50", "150")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_CREDITS_100", "160")
os.environ.setdefault("LEMONSQUEEZY_VARIANT_PAY_PER_IMAGE", "199")
os.environ.setdefault("ADMIN_EMAILS", "ops@studio.test")
