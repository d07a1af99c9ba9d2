"""Provider adapter: auth headers, endpoint joining and model allow-lists."""

import re
from dataclasses import dataclass, field
from typing import Callable

import httpx

from draftsmith.config import ModelParameters, ProviderDescriptor, ProviderType
from draftsmith.exceptions import ModelNotAllowedError, ProviderRequestError
from draftsmith.llm import LLMProvider, OpenAICompatibleProvider
from draftsmith.logging import get_logger

log = get_logger(__name__)

# Gateways for these vendors reject Bearer tokens, so the key goes in their own header.
CUSTOM_AUTH_HEADERS: dict[str, str] = {
    "google": "x-goog-api-key",
    "anthropic": "x-api-key",
}

_VERSION_SEGMENT_RE = re.compile(r"/v\d+(?:beta\d*|alpha\d*)?$", re.IGNORECASE)


def auth_headers(provider_type: ProviderType | str, api_key: str | None) -> dict[str, str]:
    """Return the auth header(s) for a vendor kind. Empty key yields no header."""
    key = (api_key or "").strip()
    if not key:
        return {}
    header_name = CUSTOM_AUTH_HEADERS.get(str(provider_type))
    if header_name:
        return {header_name: key}
    return {"Authorization": f"Bearer {key}"}


def join_url(base_url: str, path: str) -> str:
    """Join base URL and path, tolerating trailing/leading slashes."""
    normalized_base = (base_url or "").rstrip("/")
    normalized_path = path if path.startswith("/") else f"/{path}"
    return f"{normalized_base}{normalized_path}"


def has_version_segment(base_url: str) -> bool:
    """Return whether the base URL already ends in ``/v1``-style segment."""
    return bool(_VERSION_SEGMENT_RE.search((base_url or "").rstrip("/")))


def ensure_model_allowed(descriptor: ProviderDescriptor, model: str) -> None:
    """Raise ModelNotAllowedError if a non-empty allow-list excludes the model."""
    if descriptor.models and model not in descriptor.models:
        raise ModelNotAllowedError(descriptor.id, model)


@dataclass(frozen=True)
class RequestContext:
    """Request shape for one provider: endpoint, headers, and a model factory."""

    provider_id: str
    endpoint: str
    headers: dict[str, str] = field(default_factory=dict)
    model_factory: Callable[[ModelParameters], LLMProvider] | None = None

    def create_model(self, parameters: ModelParameters) -> LLMProvider:
        """Create a provider bound to ``parameters`` (allow-list is checked first)."""
        if self.model_factory is None:
            raise ValueError("Request context has no model factory")
        return self.model_factory(parameters)


def build_request_context(
    descriptor: ProviderDescriptor,
    api_key: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 120.0,
) -> RequestContext:
    """Turn a provider descriptor and API key into a request context.

    Args:
        descriptor: Vendor-neutral provider descriptor
        api_key: API key; defaults to ``descriptor.api_key``
        client: Optional shared httpx client for created providers
        timeout: Request timeout for providers that own their client

    Returns:
        RequestContext whose ``model_factory`` fails fast with
        ModelNotAllowedError before any network call.
    """
    key = descriptor.api_key if api_key is None else api_key
    headers = {**auth_headers(descriptor.provider_type, key), **descriptor.headers}
    endpoint = (descriptor.base_url or "").rstrip("/")

    def model_factory(parameters: ModelParameters) -> LLMProvider:
        ensure_model_allowed(descriptor, parameters.model)
        return OpenAICompatibleProvider(
            endpoint=endpoint,
            parameters=parameters,
            headers=headers,
            client=client,
            timeout=timeout,
        )

    return RequestContext(
        provider_id=descriptor.id,
        endpoint=endpoint,
        headers=headers,
        model_factory=model_factory,
    )


async def fetch_models(
    base_url: str,
    api_key: str,
    *,
    provider_type: ProviderType | str = "openai-compatible",
    headers: dict[str, str] | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[str]:
    """List model ids from ``<base>/models``.

    If the unqualified path 404s and the base has no version segment, retry
    once against ``<base>/v1/models``.
    """
    request_headers = {
        "Content-Type": "application/json",
        **auth_headers(provider_type, api_key),
        **(headers or {}),
    }
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    try:
        urls = [join_url(base_url, "/models")]
        if not has_version_segment(base_url):
            urls.append(join_url(join_url(base_url, "/v1"), "/models"))

        response: httpx.Response | None = None
        for url in urls:
            log.debug("Fetching models", url=url)
            try:
                response = await http.get(url, headers=request_headers)
            except httpx.HTTPError as e:
                raise ProviderRequestError(f"Failed to fetch models: {e}") from e
            if response.status_code != 404:
                break

        assert response is not None
        if not response.is_success:
            raise ProviderRequestError(
                f"Failed to fetch models: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderRequestError(f"Failed to fetch models: invalid JSON ({e})") from e

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ProviderRequestError("Failed to fetch models: response has no data list")
        return [str(entry["id"]) for entry in entries if isinstance(entry, dict) and entry.get("id")]
    finally:
        if owns_client:
            await http.aclose()
