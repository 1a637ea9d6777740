"""
Google OAuth scope constants and shorthand expansion.
"""
from typing import Iterable, List

from goog.auth.models import dedupe_scopes

SCOPE_GMAIL_READONLY = "https://www.googleapis.com/auth/gmail.readonly"
SCOPE_GMAIL_SEND = "https://www.googleapis.com/auth/gmail.send"
SCOPE_GMAIL_MODIFY = "https://www.googleapis.com/auth/gmail.modify"
SCOPE_GMAIL_COMPOSE = "https://www.googleapis.com/auth/gmail.compose"
SCOPE_GMAIL_LABELS = "https://www.googleapis.com/auth/gmail.labels"

SCOPE_CALENDAR_READONLY = "https://www.googleapis.com/auth/calendar.readonly"
SCOPE_CALENDAR_EVENTS = "https://www.googleapis.com/auth/calendar.events"
SCOPE_CALENDAR = "https://www.googleapis.com/auth/calendar"

SCOPE_TASKS_READONLY = "https://www.googleapis.com/auth/tasks.readonly"
SCOPE_TASKS = "https://www.googleapis.com/auth/tasks"

SCOPE_CONTACTS_READONLY = "https://www.googleapis.com/auth/contacts.readonly"
SCOPE_CONTACTS = "https://www.googleapis.com/auth/contacts"

SCOPE_DRIVE_READONLY = "https://www.googleapis.com/auth/drive.readonly"
SCOPE_DRIVE_FILE = "https://www.googleapis.com/auth/drive.file"
SCOPE_DRIVE = "https://www.googleapis.com/auth/drive"

SCOPE_USERINFO_EMAIL = "https://www.googleapis.com/auth/userinfo.email"
SCOPE_USERINFO_PROFILE = "https://www.googleapis.com/auth/userinfo.profile"
SCOPE_OPENID = "openid"

# Needed to resolve the account email after consent
IDENTITY_SCOPES = [SCOPE_USERINFO_EMAIL, SCOPE_OPENID]

DEFAULT_SCOPES = [
    SCOPE_GMAIL_READONLY,
    SCOPE_CALENDAR_READONLY,
    SCOPE_TASKS_READONLY,
    SCOPE_USERINFO_EMAIL,
    SCOPE_OPENID,
]

SCOPE_SHORTHANDS = {
    "gmail": SCOPE_GMAIL_READONLY,
    "gmail.readonly": SCOPE_GMAIL_READONLY,
    "gmail.send": SCOPE_GMAIL_SEND,
    "gmail.modify": SCOPE_GMAIL_MODIFY,
    "gmail.compose": SCOPE_GMAIL_COMPOSE,
    "gmail.labels": SCOPE_GMAIL_LABELS,
    "calendar": SCOPE_CALENDAR_READONLY,
    "calendar.readonly": SCOPE_CALENDAR_READONLY,
    "calendar.events": SCOPE_CALENDAR_EVENTS,
    "calendar.full": SCOPE_CALENDAR,
    "tasks": SCOPE_TASKS_READONLY,
    "tasks.readonly": SCOPE_TASKS_READONLY,
    "tasks.full": SCOPE_TASKS,
    "contacts": SCOPE_CONTACTS_READONLY,
    "contacts.readonly": SCOPE_CONTACTS_READONLY,
    "contacts.full": SCOPE_CONTACTS,
    "drive": SCOPE_DRIVE_READONLY,
    "drive.readonly": SCOPE_DRIVE_READONLY,
    "drive.file": SCOPE_DRIVE_FILE,
    "drive.full": SCOPE_DRIVE,
    "email": SCOPE_USERINFO_EMAIL,
    "profile": SCOPE_USERINFO_PROFILE,
    "openid": SCOPE_OPENID,
}


def with_identity_scopes(scopes: Iterable[str]) -> List[str]:
    """Append the email/openid scopes if they are missing."""
    return dedupe_scopes(list(scopes) + IDENTITY_SCOPES)


def parse_scopes(values: Iterable[str]) -> List[str]:
    """
    Expand scope shorthands (``gmail.send``, ``calendar`` ...) to full scope URLs.

    Accepts repeated values and comma-separated lists. Unknown values are kept
    as given and left for Google to validate. The identity scopes are always
    included so the account email can be resolved.
    """
    result = []
    for value in values or []:
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            result.append(SCOPE_SHORTHANDS.get(item.lower(), item))
    if not result:
        return list(DEFAULT_SCOPES)
    return with_identity_scopes(result)
