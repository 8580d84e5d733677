"""Repository URL canonicalization.

Every source reports repositories in its own dialect (``git+https://...``,
``git@github.com:owner/repo.git``, ``https://www.github.com/Owner/Repo/tree/main``).
normalize() maps them onto a single comparable identity string,
``https://<host>/<owner>/<repo>`` in lower case, which is what the merge
engine groups on.
"""
from __future__ import annotations

import re

CODE_HOSTS = ("github.com", "gitlab.com", "bitbucket.org", "codeberg.org")

_SCP_LIKE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+\.[a-z]{2,}):(?!//)(?P<path>.+)$", re.IGNORECASE)
_URL = re.compile(
    r"^(?:(?:https?|ssh|git)://)?"
    r"(?:[^@/]+@)?"
    r"(?:www\.)?"
    r"(?P<host>[\w.-]+?)"
    r"(?::\d+)?"
    r"/(?P<owner>[\w.-]+)"
    r"/(?P<repo>[\w.-]+)",
    re.IGNORECASE,
)


def normalize(url: str | None) -> str | None:
    """Return the canonical identity for a repository reference.

    Returns None for anything that is not a recognisable code-host
    repository. The result is a fixed point: normalize(normalize(u)) ==
    normalize(u).
    """
    if not url:
        return None
    text = url.strip()
    if text.lower().startswith("git+"):
        text = text[4:]

    text = text.split("#", 1)[0].split("?", 1)[0]

    scp = _SCP_LIKE.match(text)
    if scp and "://" not in text:
        text = f"https://{scp.group('host')}/{scp.group('path').lstrip('/')}"

    m = _URL.match(text)
    if not m:
        return None

    host = m.group("host").lower()
    if host.startswith("www."):
        host = host[4:]
    if host not in CODE_HOSTS:
        return None

    owner = m.group("owner").lower()
    repo = m.group("repo").lower()
    repo = re.sub(r"(\.git)+$", "", repo)
    if not owner or not repo or owner in (".", "..") or repo in (".", ".."):
        return None

    return f"https://{host}/{owner}/{repo}"


def parse_owner_repo(url: str | None) -> tuple[str, str] | None:
    canonical = normalize(url)
    if canonical is None:
        return None
    _, _, host_path = canonical.partition("://")
    _, owner, repo = host_path.split("/", 2)
    return owner, repo


def is_github(url: str | None) -> bool:
    canonical = normalize(url)
    return canonical is not None and canonical.startswith("https://github.com/")


def listing_identity(url: str) -> str:
    """Identity for records with no code-host repository (a listing page URL)."""
    text = url.strip().split("#", 1)[0].split("?", 1)[0].rstrip("/")
    return text.lower()
