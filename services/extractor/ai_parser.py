"""AI invoice parser - few-shot LLM extraction with a quota fallback chain."""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from shared import settings, Supplier
from services.extractor.patterns import parse_amount, parse_int
from services.extractor.providers import (
    GeminiProvider, OpenAIChatProvider, ProviderError, ProviderErrorKind,
)

logger = logging.getLogger(__name__)

JSON_SCHEMA = """{
  "orderNumber": null,
  "subtotal": null,
  "shipping": null,
  "tax": null,
  "discount": null,
  "orderTotal": null,
  "products": [
    { "name": "string", "quantity": 0, "lineTotal": "string" }
  ]
}"""

SYSTEM_PROMPT = (
    "You are an API that extracts structured purchase data from invoice email bodies. "
    "Respond ONLY with JSON (no markdown, no additional keys) matching this schema:\n" + JSON_SCHEMA
)

MAX_EXAMPLES = 10
DEFAULT_MAX_SAMPLES = 10

FENCE_OPEN = re.compile(r'^```[a-zA-Z]*\n?')
FENCE_CLOSE = re.compile(r'```$')


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code block from an LLM response."""
    text = (text or '').strip()
    if text.startswith('```'):
        text = FENCE_OPEN.sub('', text)
        text = FENCE_CLOSE.sub('', text.rstrip()).strip()
    return text


def build_messages(body: str, examples: Optional[List[Dict[str, Any]]] = None,
                   max_examples: int = MAX_EXAMPLES) -> List[Dict[str, str]]:
    """Chat messages: system schema, (user email, assistant JSON) pairs, then the email."""
    messages = [{'role': 'system', 'content': SYSTEM_PROMPT}]
    for example in (examples or [])[:max_examples]:
        messages.append({'role': 'user', 'content': example.get('prompt', '')})
        messages.append({'role': 'assistant', 'content': json.dumps(example.get('result'))})
    messages.append({'role': 'user', 'content': body})
    return messages


def build_flat_prompt(body: str, examples: Optional[List[Dict[str, Any]]] = None,
                      max_examples: int = MAX_EXAMPLES) -> str:
    """Single-text prompt for providers without chat roles."""
    prompt = f"{SYSTEM_PROMPT}\n\n"
    for example in (examples or [])[:max_examples]:
        prompt += f"Email:\n{example.get('prompt', '')}\nJSON:\n{json.dumps(example.get('result'))}\n\n"
    prompt += f"Email:\n{body}\nJSON:"
    return prompt


class AIInvoiceParser:
    """Parses an invoice email body into the fixed JSON schema.

    The primary provider is always tried first. Only a quota error sends the
    request to the fallback provider, which tries its candidates one by one.
    """

    def __init__(self, primary: OpenAIChatProvider, fallback: Optional[GeminiProvider] = None,
                 max_examples: int = MAX_EXAMPLES):
        self.primary = primary
        self.fallback = fallback
        self.max_examples = max_examples

    def parse(self, body: str, examples: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        messages = build_messages(body, examples, self.max_examples)
        try:
            content = self.primary.complete_chat(messages)
        except ProviderError as e:
            if e.kind is ProviderErrorKind.QUOTA and self.fallback is not None:
                logger.warning(f"Primary provider quota error, falling back: {e}")
                return self._parse_with_fallback(body, examples)
            logger.error(f"AI parse failed: {e!r}")
            raise
        return json.loads(content or '{}')

    def _parse_with_fallback(self, body: str, examples: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
        prompt = build_flat_prompt(body, examples, self.max_examples)
        last_error: Optional[ProviderError] = None

        for api_version, model in self.fallback.candidates():
            try:
                text = self.fallback.complete_text(prompt, api_version, model)
            except ProviderError as e:
                last_error = e
                if e.kind is ProviderErrorKind.UNAVAILABLE:
                    logger.info(f"Fallback candidate {model} ({api_version}) unavailable, trying next")
                    continue
                raise

            text = strip_code_fences(text)
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.error(f"Fallback {model} ({api_version}) returned non-JSON text: {text[:200]}")
                raise

        logger.error(f"Fallback exhausted: {last_error!r}")
        if last_error is not None:
            raise last_error
        raise ProviderError(ProviderErrorKind.UNAVAILABLE, 'No fallback candidates configured',
                            provider=getattr(self.fallback, 'name', None))


def parse_invoice_email(body: str, examples: Optional[List[Dict[str, Any]]] = None,
                        parser: Optional[AIInvoiceParser] = None) -> Dict[str, Any]:
    parser = parser or build_parser_from_settings()
    if parser is None:
        raise ProviderError(ProviderErrorKind.INVALID, 'OPENAI_API_KEY is not configured', provider='openai')
    return parser.parse(body, examples)


def build_parser_from_settings() -> Optional[AIInvoiceParser]:
    """Construct the parser from configured keys. None when no primary key is set."""
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set, AI parsing disabled")
        return None

    primary = OpenAIChatProvider(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        max_tokens=settings.openai_max_tokens,
        timeout=settings.openai_timeout,
    )
    fallback = None
    if settings.gemini_api_key:
        fallback = GeminiProvider(
            api_key=settings.gemini_api_key,
            models=settings.gemini_model_list,
            api_versions=settings.gemini_api_version_list,
        )
    return AIInvoiceParser(primary, fallback, max_examples=settings.ai_max_examples)


def normalize_ai_result(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Convert the string amounts of an AI result into the pattern extractor's field names."""
    data = data or {}
    fields = {}
    order_number = data.get('orderNumber')
    if order_number not in (None, ''):
        fields['orderNumber'] = str(order_number).strip()
    for source_key, field_name in (('orderTotal', 'total'), ('subtotal', 'subtotal'),
                                   ('shipping', 'shipping'), ('tax', 'tax'), ('discount', 'discount')):
        value = parse_amount(data.get(source_key))
        if value is not None:
            fields[field_name] = value

    products = []
    for item in data.get('products') or []:
        if not isinstance(item, dict):
            continue
        name = str(item.get('name') or '').strip()
        if not name:
            continue
        line = {'name': name, 'quantity': parse_int(item.get('quantity')) or 1}
        line_total = parse_amount(item.get('lineTotal'))
        if line_total is not None:
            line['invoiceLineTotal'] = line_total
        products.append(line)

    return {'fields': fields, 'products': products}


def training_samples(supplier: Supplier) -> List[Dict[str, Any]]:
    return list((supplier.ai_training or {}).get('samples') or [])


def add_training_sample(supplier: Supplier, prompt: str, result: Dict[str, Any],
                        max_samples: Optional[int] = None) -> int:
    """Prepend an operator-corrected sample and trim to the supplier's maxSamples.

    Returns the number of samples kept.
    """
    training = dict(supplier.ai_training or {})
    limit = max_samples or training.get('maxSamples') or DEFAULT_MAX_SAMPLES
    samples = [{'prompt': prompt, 'result': result}] + list(training.get('samples') or [])
    training['samples'] = samples[:limit]
    training.setdefault('maxSamples', limit)
    supplier.ai_training = training
    logger.info(f"Supplier {supplier.supplier_id}: stored AI training sample ({len(training['samples'])}/{limit})")
    return len(training['samples'])
