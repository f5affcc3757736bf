from metering.usage.store import UsageSnapshot, UsageStore, current_month
from metering.usage.tracker import UsageTracker

__all__ = ["UsageSnapshot", "UsageStore", "UsageTracker", "current_month"]
