"""Signal extraction from Shopify CLI output.

Pure functions that scan accumulated CLI text for:
- the partner authentication URL the CLI asks the user to open
- a stage classification of a chunk of output

Stage classification is a best-effort keyword heuristic over free-form CLI
output. It is not exhaustive: upstream phrasing changes in the Shopify CLI
silently degrade stage detection, and the monitor never relies on it for
completion (the filesystem probe is authoritative).
"""

import re
from dataclasses import dataclass

from shopbuilder.jobs.schemas import JobStage

# Generic portal used when the CLI never printed a usable link
FALLBACK_AUTH_URL = "https://partners.shopify.com/"

# Covers all standard ANSI/VT100 escape sequences
_ANSI_RE = re.compile(r"\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

# URL restricted to the Shopify partner/account domains
_PARTNER_URL = r"(https://(?:partners|accounts)\.shopify\.com(?:/[^\s'\"<>)\]]*)?)"

# Ordered: most specific phrasing first, first match wins
_AUTH_URL_PATTERNS = [
    re.compile(r"(?i)visit\s+the\s+following\s+url\s+to\s+authenticate\s*:?\s*" + _PARTNER_URL),
    re.compile(r"(?i)opened\s+link\s+to\s+start\s+the\s+auth\s+process\s*:?\s*" + _PARTNER_URL),
    re.compile(r"(?i)press\s+any\s+key\s+to\s+open\s+the\s+login\s+page[\s\S]{0,300}?" + _PARTNER_URL),
    re.compile(r"(?i)open\s+(?:this|the\s+following)\s+(?:link|url)[\s\S]{0,120}?" + _PARTNER_URL),
    re.compile(r"(?i)(?:log\s*in|login|authenticate|authentication|verification)[\s\S]{0,200}?" + _PARTNER_URL),
]

_TRAILING_PUNCTUATION = ".,;:!?"

# Ordered keyword groups, first matching group wins
STAGE_KEYWORDS: tuple[tuple[JobStage, tuple[str, ...]], ...] = (
    (
        JobStage.CREATING,
        ("creating", "scaffolding", "setting up", "initializing", "downloading", "cloning", "generating"),
    ),
    (
        JobStage.WAITING_AUTH,
        ("authenticate", "authentication", "log in", "login", "verification code", "press any key"),
    ),
    (JobStage.AUTHENTICATING, ("authenticating", "completing", "logged in")),
    (JobStage.FINALIZING, ("finalizing", "finishing", "installing")),
    (JobStage.COMPLETED, ("success", "completed", "done", "is ready")),
)


@dataclass(frozen=True)
class OutputSignals:
    auth_url: str | None
    stage: JobStage


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def clean_lines(text: str) -> list[str]:
    """Split CLI text into non-blank lines with escape codes removed."""
    lines = []
    for raw in strip_ansi(text).replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw.rstrip()
        if line.strip():
            lines.append(line)
    return lines


def extract_auth_url(text: str) -> str | None:
    """Return the first partner authentication URL found in text, if any."""
    clean = strip_ansi(text)
    for pattern in _AUTH_URL_PATTERNS:
        match = pattern.search(clean)
        if match:
            return match.group(1).rstrip(_TRAILING_PUNCTUATION)
    return None


def classify_stage(text: str) -> JobStage:
    """Classify a blob of CLI output into a pipeline stage (best effort)."""
    lowered = strip_ansi(text).lower()
    for stage, keywords in STAGE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return stage
    return JobStage.CREATING


def extract_signals(text: str) -> OutputSignals:
    return OutputSignals(auth_url=extract_auth_url(text), stage=classify_stage(text))
