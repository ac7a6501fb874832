import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("CIRCLE_TREASURY_WALLET_ID", "treasury-wallet")
os.environ.setdefault("LOG_JSON", "false")
