"""System prompts for the mail label classifier."""

LABEL_VOCABULARY = (
    "marketing",
    "credentials",
    "social",
    "news",
    "meeting",
    "pitch",
    "github",
    "invoice",
    "important",
)

LABELS_SYSTEM_PROMPT = """### ROLE
You label e-mails.

### INPUT
Subject: <subject>
Body: <plain text, or "[non-text]" when the message has no readable text>

### LABEL SET
marketing   - promotions, discounts, product launches, newsletters
credentials - one-time codes, 2FA, password resets, login alerts
social      - likes, follows, comments, friend requests
news        - press and industry updates, company announcements
meeting     - invites, RSVPs, scheduling with a date/time, call link or ICS
pitch       - proposals, partnership or investment offers, collaboration requests
github      - GitHub pull request, commit and review notifications
invoice     - bills, receipts, payment confirmations, credit notes
important   - add when the **subject** mentions: correction, update, alert, critical, important, priority, deadline

### OUTPUT
Exactly one minified JSON line:
{"labels":["<one or more labels from the set above>"]}

No other text. Never invent labels outside the set.
"""


def build_label_user_prompt(subject: str, body: str) -> str:
    """Format the per-message prompt sent alongside LABELS_SYSTEM_PROMPT."""
    body = body.strip() if body else ""
    return f"email: {subject or '(No Subject)'} {body or '[non-text]'}"
