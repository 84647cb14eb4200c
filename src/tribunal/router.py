"""Maps a logical model id to a provider and a ready-to-send upstream call."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .credentials import CredentialStore
from .errors import MissingCredentialError, ModelNotFoundError
from .models import StreamRequest
from .providers import (
    PROVIDERS,
    PROVIDERS_BY_ID,
    THINKING_MODEL_TOKEN_MULTIPLIER,
    ProviderDescriptor,
    ProviderDriver,
    is_thinking_model,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dispatch:
    """Everything needed to open one upstream stream."""
    provider: ProviderDescriptor
    model_id: str
    upstream_model: str
    driver: ProviderDriver
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    max_tokens: int

    @property
    def provider_label(self) -> str:
        return self.provider.label


def resolve(model_id: str) -> ProviderDescriptor:
    """
    Find the provider serving a logical model id.

    Args:
        model_id: Logical model id, e.g. ``proxyapi/gpt-4o`` or ``deepseek-chat``

    Returns:
        The first matching descriptor of the static table

    Raises:
        ModelNotFoundError: No provider serves the id
    """
    for descriptor in PROVIDERS:
        if descriptor.serves(model_id):
            return descriptor
    raise ModelNotFoundError(model_id)


def fallback_model(model_id: str) -> Optional[str]:
    """Logical id to try once the serving provider has failed, if any."""
    try:
        return resolve(model_id).fallback_for(model_id)
    except ModelNotFoundError:
        return None


class ProviderRouter:
    """Turns a StreamRequest into a Dispatch for a given user."""

    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    async def api_key_for(self, descriptor: ProviderDescriptor, user_id: str) -> str:
        key = await self.credentials.get_api_key(user_id, descriptor.credential)
        if not key:
            raise MissingCredentialError(descriptor.label)
        return key

    async def _select(self, request: StreamRequest, user_id: str) -> ProviderDescriptor:
        descriptor = resolve(request.model_id)
        if request.prefer_alternate_provider and descriptor.alternate:
            alternate = PROVIDERS_BY_ID[descriptor.alternate]
            if await self.credentials.get_api_key(user_id, alternate.credential):
                logger.info(
                    f"Routing {request.model_id} through {alternate.label} (priority flag)"
                )
                return alternate
        return descriptor

    async def dispatch(self, request: StreamRequest, user_id: str) -> Dispatch:
        descriptor = await self._select(request, user_id)
        api_key = await self.api_key_for(descriptor, user_id)

        upstream = descriptor.upstream_model(request.model_id)
        max_tokens = request.max_tokens
        if is_thinking_model(upstream):
            max_tokens *= THINKING_MODEL_TOKEN_MULTIPLIER
        temperature = (
            request.temperature if descriptor.supports_temperature(request.model_id) else None
        )

        endpoint = descriptor.endpoint_for(upstream)
        call = endpoint.driver.build_request(
            endpoint.base_url,
            upstream,
            request,
            api_key,
            max_tokens,
            temperature,
            descriptor.token_param(request.model_id),
        )
        headers = {**call.headers, **descriptor.extra_headers}
        logger.info(
            f"Dispatching {request.model_id} -> {descriptor.id}:{upstream} "
            f"({endpoint.driver.wire}, max_tokens={max_tokens})"
        )
        return Dispatch(
            provider=descriptor,
            model_id=request.model_id,
            upstream_model=upstream,
            driver=endpoint.driver,
            url=call.url,
            headers=headers,
            body=call.body,
            max_tokens=max_tokens,
        )
