"""Python client for the dashboard API: unified reads, live updates, notification tracking."""

from src.salesops.client.dashboard import DashboardClient, NotificationTracker

__all__ = ["DashboardClient", "NotificationTracker"]
