"""Minimal Docker Registry V2 client used to pull attestation manifests."""

from __future__ import annotations

import logging
from typing import Any

import requests

logger = logging.getLogger(__name__)

# Docker Hub serves the V2 API from a different host than its image names.
_DOCKER_HUB_API_HOST = "registry-1.docker.io"
_DOCKER_HUB_NAMES = ("docker.io", "index.docker.io")

MANIFEST_ACCEPT = ", ".join(
    (
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    )
)


class RegistryError(Exception):
    """Raised when a registry API call fails.

    Attributes:
        status_code: HTTP status returned by the registry, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def api_host(registry: str) -> str:
    """Return the host serving the V2 API for ``registry``."""
    return _DOCKER_HUB_API_HOST if registry in _DOCKER_HUB_NAMES else registry


class RegistryClient:
    """Anonymous client for one repository of a Docker Registry V2 API.

    Pull tokens are negotiated anonymously when the registry answers 401.

    Args:
        registry: Registry hostname as it appears in image references.
        repository: Repository path (e.g. ``library/nginx``).
        timeout: HTTP request timeout in seconds.
        session: Optional shared :class:`requests.Session`.
    """

    def __init__(
        self,
        registry: str,
        repository: str,
        *,
        timeout: float = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.timeout = timeout
        self._session = session or requests.Session()
        self._token: str | None = None
        self._base_url = f"https://{api_host(registry)}/v2"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_digest(self, reference: str) -> str:
        """Return the manifest digest that ``reference`` (a tag) points to.

        Raises:
            RegistryError: If the call fails or the registry sends no digest.
        """
        resp = self._send("HEAD", f"/{self.repository}/manifests/{reference}", MANIFEST_ACCEPT)
        digest = resp.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryError(
                f"registry did not return a digest for {self.repository}:{reference}"
            )
        return digest

    def get_manifest(self, reference: str) -> dict[str, Any]:
        """Fetch the manifest for a tag or digest.

        Raises:
            RegistryError: If the call fails.
        """
        resp = self._send("GET", f"/{self.repository}/manifests/{reference}", MANIFEST_ACCEPT)
        return _json(resp)

    def get_blob(self, digest: str) -> dict[str, Any]:
        """Fetch a JSON blob by digest.

        Raises:
            RegistryError: If the call fails or the blob is not JSON.
        """
        resp = self._send("GET", f"/{self.repository}/blobs/{digest}")
        return _json(resp)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, accept: str | None = None) -> requests.Response:
        url = self._base_url + path
        headers: dict[str, str] = {}
        if accept:
            headers["Accept"] = accept

        try:
            resp = self._request(method, url, headers)
            if resp.status_code == 401:
                self._authenticate(resp)
                resp = self._request(method, url, headers)
        except requests.RequestException as exc:
            raise RegistryError(f"{method} {url} failed: {exc}") from exc

        if resp.status_code != 200:
            raise RegistryError(
                f"Registry returned {resp.status_code} for {url}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    def _request(self, method: str, url: str, headers: dict[str, str]) -> requests.Response:
        req_headers = {**headers}
        if self._token:
            req_headers["Authorization"] = f"Bearer {self._token}"

        logger.debug("%s %s", method, url)
        return self._session.request(method, url, headers=req_headers, timeout=self.timeout)

    def _authenticate(self, response: requests.Response) -> None:
        """Obtain an anonymous pull token from the realm in ``WWW-Authenticate``."""
        params = _parse_www_authenticate(response.headers.get("WWW-Authenticate", ""))
        realm = params.get("realm")
        if not realm:
            raise RegistryError(
                f"registry {self.registry} requires authentication but sent no token realm",
                status_code=401,
            )

        query = {"scope": params.get("scope", f"repository:{self.repository}:pull")}
        if "service" in params:
            query["service"] = params["service"]
        logger.debug("Requesting anonymous token: realm=%s %s", realm, query)

        token_resp = self._session.get(realm, params=query, timeout=self.timeout)
        if token_resp.status_code != 200:
            raise RegistryError(
                f"token request to {realm} returned {token_resp.status_code}",
                status_code=token_resp.status_code,
            )
        body = token_resp.json()
        self._token = body.get("token") or body.get("access_token")


def _json(resp: requests.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise RegistryError(f"invalid JSON from {resp.url}: {exc}") from exc
    if not isinstance(data, dict):
        raise RegistryError(f"unexpected JSON document from {resp.url}")
    return data


def _parse_www_authenticate(header: str) -> dict[str, str]:
    """Parse ``Bearer realm="...",service="...",scope="..."`` into a dict."""
    if header.lower().startswith("bearer "):
        header = header[7:]

    params: dict[str, str] = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            params[key.strip()] = value.strip().strip('"')
    return params
