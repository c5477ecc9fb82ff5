from app.platform.notifications.email import (
    EmailDispatcher,
    InMemoryEmailDispatcher,
    NullEmailDispatcher,
    SentEmail,
    SmtpEmailDispatcher,
    build_email_dispatcher,
    get_email_dispatcher,
    set_email_dispatcher,
)

__all__ = [
    "EmailDispatcher",
    "InMemoryEmailDispatcher",
    "NullEmailDispatcher",
    "SentEmail",
    "SmtpEmailDispatcher",
    "build_email_dispatcher",
    "get_email_dispatcher",
    "set_email_dispatcher",
]
