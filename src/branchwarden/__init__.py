"""branchwarden - branch synchronization and merge orchestration."""

__version__ = "0.3.0"
