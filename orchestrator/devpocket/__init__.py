"""DevPocket cluster credential management and environment orchestration."""
