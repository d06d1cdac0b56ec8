import os

# Keep the module-level engine off the default on-disk database.
os.environ.setdefault("BILLS_DATABASE_URL", "sqlite://")
os.environ.setdefault("BILLS_SCHEDULER_ENABLED", "0")
