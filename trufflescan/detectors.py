"""
Credential detectors.

Each detector is a compiled pattern, an optional keyword prefilter and an
optional live verifier. Verifiers only run when verification is enabled.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Pattern, Tuple

import aiohttp

from trufflescan.config import DetectorSpec

logger = logging.getLogger(__name__)

VERIFY_TIMEOUT_SECONDS = 10

Verifier = Callable[[aiohttp.ClientSession, str], Awaitable[bool]]


@dataclass(frozen=True)
class Detector:
    name: str
    pattern: Pattern
    keywords: Tuple[str, ...] = ()
    verifier: Optional[Verifier] = None

    def matches_keywords(self, text: str) -> bool:
        if not self.keywords:
            return True
        lowered = text.lower()
        return any(keyword.lower() in lowered for keyword in self.keywords)

    def find(self, text: str) -> List[str]:
        """Raw secret values in text, in match order, without duplicates."""
        if not self.matches_keywords(text):
            return []

        found = []
        for match in self.pattern.finditer(text):
            if 'val' in match.groupdict():
                value = match.group('val')
            else:
                value = match.group(0)
            value = value.strip().strip('\'"')
            if value and value not in found:
                found.append(value)
        return found


# ===================================================================
# VERIFIERS
# ===================================================================

async def verify_github_token(session: aiohttp.ClientSession, token: str) -> bool:
    """A GitHub token is live when GET /user answers 200."""
    headers = {
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github+json",
    }
    timeout = aiohttp.ClientTimeout(total=VERIFY_TIMEOUT_SECONDS)
    async with session.get("https://api.github.com/user", headers=headers, timeout=timeout) as response:
        return response.status == 200


# ===================================================================
# DEFAULT DETECTORS
# ===================================================================

# (name, regex, keywords, verifier)
DEFAULT_DETECTOR_DEFINITIONS = [
    ("AWS", r'\b((?:AKIA|ASIA|AGPA|AIDA)[A-Z0-9]{16})\b', ("AKIA", "ASIA", "AGPA", "AIDA"), None),
    ("Github", r'\b(ghp_[A-Za-z0-9]{36}|gho_[A-Za-z0-9]{36}|ghu_[A-Za-z0-9]{36})\b',
     ("ghp_", "gho_", "ghu_"), verify_github_token),
    ("Gitlab", r'\bglpat-[a-zA-Z0-9_\-]{20}\b', ("glpat-",), None),
    ("Slack", r'\b(xox[pbar]-[0-9]{10,13}-[0-9]{10,13}-[A-Za-z0-9]{24,32})\b', ("xox",), None),
    ("Stripe", r'\b(sk_live_[A-Za-z0-9]{24,}|rk_live_[A-Za-z0-9]{24,})\b', ("sk_live_", "rk_live_"), None),
    ("SendGrid", r'\bSG\.[A-Za-z0-9_-]{22}\.[A-Za-z0-9_-]{43}\b', ("SG.",), None),
    ("OpenAI", r'\b(sk-[a-zA-Z0-9]{20}T3BlbkFJ[a-zA-Z0-9]{20}|sk-proj-[a-zA-Z0-9_-]{43,})\b', ("sk-",), None),
    ("Anthropic", r'\b(sk-ant-api03-[a-zA-Z0-9\-_]{95,})\b', ("sk-ant-",), None),
    ("HuggingFace", r'\b(hf_[a-zA-Z0-9]{32,})\b', ("hf_",), None),
    ("NpmToken", r'\bnpm_[a-zA-Z0-9]{36}\b', ("npm_",), None),
    ("PyPI", r'\bpypi-AgEIcHlwaS5vcmc[A-Za-z0-9\-_]{50,}\b', ("pypi-",), None),
    ("DigitalOcean", r'\b(dop_v1_[a-f0-9]{64})\b', ("dop_v1_",), None),
    ("GoogleAPIKey", r'\bAIza[0-9A-Za-z_-]{35}\b', ("AIza",), None),
    ("PrivateKey",
     r'-----BEGIN (?:RSA |EC |OPENSSH |DSA |ENCRYPTED |)PRIVATE KEY-----[\s\S]{50,4000}?'
     r'-----END (?:RSA |EC |OPENSSH |DSA |ENCRYPTED |)PRIVATE KEY-----',
     ("PRIVATE KEY",), None),
    ("JWT", r'\b(?P<val>eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,})\b', ("eyJ",), None),
    ("URI", r'(?:postgres|mysql|mariadb|mongodb(?:\+srv)?|redis)://[^:\s/]+:[^@\s]+@[\w\.-]+(?::\d+)?',
     ("://",), None),
]


def default_detectors() -> List[Detector]:
    return [
        Detector(name=name, pattern=re.compile(regex), keywords=keywords, verifier=verifier)
        for name, regex, keywords, verifier in DEFAULT_DETECTOR_DEFINITIONS
    ]


def detectors_from_specs(specs: Iterable[DetectorSpec]) -> List[Detector]:
    """Detectors loaded from the configuration file never verify."""
    detectors = []
    for spec in specs:
        detectors.append(Detector(name=spec.name, pattern=re.compile(spec.regex), keywords=spec.keywords))
        logger.debug(f"Loaded custom detector: {spec.name}")
    return detectors
