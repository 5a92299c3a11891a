"""Normalize git URLs found in provenance into browsable HTTPS URLs."""

from __future__ import annotations

_GIT_PLUS_PREFIX = "git+"


def clean_git_url(url: str) -> str:
    """Return ``url`` as a plain HTTPS repository URL where possible.

    Strips the ``git+`` prefix used by provenance materials, converts SSH
    forms (``git@host:path``, ``ssh://[git@]host/path``) to HTTPS, drops a
    trailing ``.git`` and normalizes Azure DevOps layouts. URLs that cannot
    be interpreted are returned unchanged (minus ``git+``).

    Examples:
        >>> clean_git_url("git+https://github.com/example/operator.git")
        'https://github.com/example/operator'
        >>> clean_git_url("git@gitlab.com:group/project.git")
        'https://gitlab.com/group/project'
    """
    if not url:
        return url
    if url.startswith(_GIT_PLUS_PREFIX):
        url = url[len(_GIT_PLUS_PREFIX):]

    split = _split_ssh(url) or _split_http(url) or _split_bare(url)
    if split is None:
        return url
    return _normalize(*split)


def _split_ssh(url: str) -> tuple[str, str] | None:
    for prefix in ("ssh://git@", "ssh://"):
        if url.startswith(prefix):
            host, sep, path = url[len(prefix):].partition("/")
            return (host, path) if sep else None
    if url.startswith("git@"):
        host, sep, path = url[len("git@"):].partition(":")
        return (host, path) if sep else None
    return None


def _split_http(url: str) -> tuple[str, str] | None:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            host, sep, path = url[len(prefix):].partition("/")
            return (host, path) if sep else None
    return None


def _split_bare(url: str) -> tuple[str, str] | None:
    """Handle ``host/path`` without a scheme, for well-known hosts only."""
    if "://" in url or "@" in url or "/" not in url:
        return None
    host, _, path = url.partition("/")
    return (host, path) if is_known_git_host(host) else None


def _normalize(host: str, path: str) -> str:
    if path.endswith(".git"):
        path = path[: -len(".git")]
    path = path.strip("/")
    if _is_azure_devops(host):
        return _normalize_azure(host, path)
    return f"https://{host}/{path}"


def _normalize_azure(host: str, path: str) -> str:
    parts = path.split("/")
    if "ssh.dev.azure.com" in host:
        return f"https://ssh.dev.azure.com/{path}"
    if "dev.azure.com" in host:
        # dev.azure.com/<org>/<project>/_git/<repo>
        if len(parts) >= 4 and parts[2] == "_git":
            return f"https://dev.azure.com/{parts[0]}/{parts[1]}/_git/{parts[3]}"
        return f"https://dev.azure.com/{path}"
    if "visualstudio.com" in host and len(parts) >= 2 and parts[0] == "_git":
        return f"https://{host}/_git/{parts[1]}"
    return f"https://{host}/{path}"


def is_known_git_host(host: str) -> bool:
    """Return True for GitHub, GitLab, Bitbucket, Azure DevOps, Gitea and CodeCommit hosts."""
    return (
        "github" in host
        or "gitlab" in host
        or host == "bitbucket.org"
        or host.endswith(".bitbucket.org")
        or _is_azure_devops(host)
        or "gitea" in host
        or host == "codeberg.org"
        or ("codecommit" in host and "amazonaws.com" in host)
    )


def _is_azure_devops(host: str) -> bool:
    return "azure.com" in host or "visualstudio.com" in host
