from caseflow.services.notifications.dispatcher import NotificationDispatcher, NotificationPayload

__all__ = ["NotificationDispatcher", "NotificationPayload"]
