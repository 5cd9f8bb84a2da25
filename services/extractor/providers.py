"""LLM provider adapters used by the AI invoice parser.

Each adapter wraps one SDK and converts whatever the SDK raises into a
``ProviderError`` with a ``ProviderErrorKind`` so the parser never inspects
provider-specific error shapes.
"""
import logging
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from openai import OpenAI
from google import genai
from google.genai import types

logger = logging.getLogger(__name__)

QUOTA_CODES = {'rate_limit_exceeded', 'insufficient_quota', 'resource_exhausted'}
QUOTA_MESSAGES = (
    'insufficient_quota',
    'insufficient credits',
    'you exceeded your current quota',
    'rate limit',
)
UNAVAILABLE_MESSAGES = ('not found', 'unsupported')
INVALID_STATUSES = {400, 401, 403, 422}


class ProviderErrorKind(str, Enum):
    QUOTA = 'quota'
    UNAVAILABLE = 'unavailable'
    INVALID = 'invalid'
    UNKNOWN = 'unknown'


class ProviderError(Exception):
    """A provider call failed. ``kind`` drives the parser's fallback decisions."""

    def __init__(self, kind: ProviderErrorKind, message: str, provider: Optional[str] = None):
        self.kind = kind
        self.provider = provider
        super().__init__(message)

    def __repr__(self):
        return f"ProviderError(kind={self.kind.value!r}, provider={self.provider!r}, message={str(self)!r})"


def _status_of(exc: Exception) -> Optional[int]:
    for attr in ('status_code', 'status', 'code'):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_provider_error(exc: Exception) -> ProviderErrorKind:
    """Map an SDK exception onto the small set of kinds the parser understands."""
    if isinstance(exc, ProviderError):
        return exc.kind

    status = _status_of(exc)
    codes = {
        str(getattr(exc, attr, '') or '').lower()
        for attr in ('code', 'status', 'type')
        if not isinstance(getattr(exc, attr, None), int)
    }
    message = str(exc).lower()

    if status == 429 or codes & QUOTA_CODES or any(m in message for m in QUOTA_MESSAGES):
        return ProviderErrorKind.QUOTA
    if status == 404 or 'not_found' in codes or any(m in message for m in UNAVAILABLE_MESSAGES):
        return ProviderErrorKind.UNAVAILABLE
    if status in INVALID_STATUSES:
        return ProviderErrorKind.INVALID
    return ProviderErrorKind.UNKNOWN


class OpenAIChatProvider:
    """Chat-completions provider with native few-shot roles and JSON mode."""

    name = 'openai'

    def __init__(self, client: Optional[OpenAI] = None, api_key: Optional[str] = None,
                 model: str = 'gpt-4o-mini', max_tokens: int = 512, timeout: Optional[float] = None):
        if client is None:
            client = OpenAI(api_key=api_key, timeout=timeout)
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    def complete_chat(self, messages: List[Dict[str, str]]) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                max_tokens=self.max_tokens,
                response_format={'type': 'json_object'},
                messages=messages,
            )
        except Exception as e:
            kind = classify_provider_error(e)
            logger.warning(f"OpenAI request failed ({kind.value}): {e}")
            raise ProviderError(kind, str(e), provider=self.name) from e

        content = response.choices[0].message.content if response.choices else None
        return (content or '').strip() or '{}'


class GeminiProvider:
    """Prompt-completion provider that tries each API version and model in turn."""

    name = 'gemini'

    def __init__(self, api_key: Optional[str] = None, models: Sequence[str] = ('gemini-2.0-flash',),
                 api_versions: Sequence[str] = ('v1', 'v1beta', 'v1alpha'),
                 client_factory: Optional[Callable[[str], object]] = None):
        self.api_key = api_key
        self.models = list(models)
        self.api_versions = list(api_versions)
        self.client_factory = client_factory or self._build_client
        self._clients: Dict[str, object] = {}

    def _build_client(self, api_version: str):
        return genai.Client(api_key=self.api_key, http_options=types.HttpOptions(api_version=api_version))

    def _client(self, api_version: str):
        if api_version not in self._clients:
            self._clients[api_version] = self.client_factory(api_version)
        return self._clients[api_version]

    def candidates(self) -> Iterator[Tuple[str, str]]:
        for api_version in self.api_versions:
            for model in self.models:
                yield api_version, model

    def complete_text(self, prompt: str, api_version: str, model: str) -> str:
        try:
            response = self._client(api_version).models.generate_content(model=model, contents=prompt)
        except Exception as e:
            kind = classify_provider_error(e)
            logger.warning(f"Gemini {model} ({api_version}) failed ({kind.value}): {e}")
            raise ProviderError(kind, str(e), provider=self.name) from e
        return getattr(response, 'text', None) or ''
