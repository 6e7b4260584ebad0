"""
Best-effort reduction of an email body to the sender's own words.

Removes quoted replies, reply attribution lines, forwarded header blocks,
signature blocks and mobile-client boilerplate. The output is used both
for display and as model input, so the steps run in a fixed order and the
result is deterministic for a given input.

Usage:
    from inbox_triage.mail.cleaner import clean_body
    pure = clean_body(extract_body(part_tree) or snippet)
"""

import re

# Step 3: the earliest of these marks the start of quoted history.
_HISTORY_MARKERS = (
    # "On Mon, 3 Feb 2026 at 09:12, Jane <jane@example.com> wrote:"
    re.compile(r"^.*\bwrote:[ \t]*$", re.MULTILINE | re.IGNORECASE),
    # Outlook-style forwarded header block
    re.compile(
        r"^[ \t]*From:.*\n(?:.*\n){0,2}?[ \t]*(?:Sent|Date|To|Subject):",
        re.MULTILINE | re.IGNORECASE,
    ),
    re.compile(r"^[ \t]*-*[ \t]*Original Message[ \t]*-*[ \t]*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^[ \t]*(?:_{2,}|-{2,})[ \t]*$", re.MULTILINE),
)

# Step 4: signature separators.
_SIGNATURE_MARKERS = (
    re.compile(r"^-- $", re.MULTILINE),
    re.compile(r"^[ \t]*Sent from my (?:iPhone|iPad|Android|mobile device)\b.*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^[ \t]*Get Outlook for (?:iOS|Android)\b.*$", re.MULTILINE | re.IGNORECASE),
)

_EXTRA_BLANK_LINES_RE = re.compile(r"\n(?:[ \t]*\n){3,}")


def _cut_at_earliest(text: str, patterns: tuple[re.Pattern, ...]) -> str:
    positions = [m.start() for m in (p.search(text) for p in patterns) if m]
    if not positions:
        return text
    return text[: min(positions)]


def clean_body(text: str) -> str:
    """Return the cleaned "pure message" for `text`. Never raises."""
    if not text:
        return ""

    # 1. Line endings
    text = text.replace("\r\n", "\n").replace("\r", "\n").strip()

    # 2. Quoted lines
    text = "\n".join(line for line in text.split("\n") if not line.lstrip().startswith(">"))

    # 3. Reply / forward history
    text = _cut_at_earliest(text, _HISTORY_MARKERS)

    # 4. Signature
    text = _cut_at_earliest(text, _SIGNATURE_MARKERS)

    # 5. Blank-line runs
    text = _EXTRA_BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()
