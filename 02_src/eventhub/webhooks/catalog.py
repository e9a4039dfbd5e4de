"""Event types tenants can subscribe webhooks to."""

WEBHOOK_EVENTS: tuple[str, ...] = (
    "employee.created",
    "employee.updated",
    "employee.deleted",
    "employee.onboarded",
    "employee.offboarded",
    "attendance.checkin",
    "attendance.checkout",
    "attendance.updated",
    "leave.requested",
    "leave.approved",
    "leave.rejected",
    "leave.cancelled",
    "payroll.processed",
    "payroll.paid",
    "document.uploaded",
    "document.signed",
    "document.deleted",
    "user.created",
    "user.updated",
    "user.deleted",
    "user.login",
    "user.logout",
    "chat.message",
    "notification.created",
)

TEST_EVENT = "test.ping"
