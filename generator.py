import logging
import re
import threading
from concurrent import futures
from typing import Any, Dict, Optional

import openai

import config
from data_types import GenerationRequest, GenerationResult
from errors import RunAborted, UpstreamError
from scrypto_template import build_system_prompt, build_user_prompt

logger = logging.getLogger(__name__)

# ==========================================
# Generation: LLM call + code block extraction
# ==========================================

_RUST_FENCE_RE = re.compile(r"```rust\n(.*?)\n```", re.DOTALL)


def extract_code_blocks(text: str) -> str:
    """Returns the first ```rust fenced block, or the text unchanged if there is none."""
    match = _RUST_FENCE_RE.search(text)
    if match:
        return match.group(1)
    return text


def _usage_to_dict(usage: Any) -> Optional[Dict[str, Any]]:
    if usage is None:
        return None
    if hasattr(usage, "model_dump"):
        return usage.model_dump()
    if isinstance(usage, dict):
        return dict(usage)
    return {"raw": str(usage)}


class GenerationClient:
    """Asks a chat-completion endpoint for a Scrypto blueprint.

    One outbound call per generate(); failures surface as UpstreamError and are
    never retried here. With a cancel_event the call runs on a worker thread
    over its own connection pool, which is closed if the event fires.
    """

    def __init__(
        self,
        client=None,
        model: str = config.MODEL_NAME,
        temperature: float = config.GENERATION_TEMPERATURE,
        max_tokens: int = config.GENERATION_MAX_TOKENS,
        poll_interval: float = 0.2,
    ):
        self.client = client or config.client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.poll_interval = poll_interval

    def generate(
        self,
        task_description: str,
        prior_failure_text: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        request = GenerationRequest(task_description=task_description, prior_failure_text=prior_failure_text)
        return self.generate_from_request(request, cancel_event)

    def _create_cancellable(self, cancel_event: threading.Event, **kwargs):
        http_client = openai.DefaultHttpxClient()
        call_client = self.client.with_options(http_client=http_client)
        executor = futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(call_client.chat.completions.create, **kwargs)
        try:
            while True:
                if cancel_event.is_set():
                    future.cancel()
                    raise RunAborted("Cancelled while waiting for the generation service")
                try:
                    return future.result(timeout=self.poll_interval)
                except futures.TimeoutError:
                    continue
        finally:
            # closing the pool drops an in-flight request
            http_client.close()
            executor.shutdown(wait=False)

    def generate_from_request(
        self,
        request: GenerationRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        messages = [
            {"role": "system", "content": build_system_prompt(request.prior_failure_text)},
            {"role": "user", "content": build_user_prompt(request.task_description, request.is_retry)},
        ]
        kwargs = dict(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        logger.debug("Requesting generation from %s (retry=%s)", self.model, request.is_retry)
        try:
            if cancel_event is None:
                response = self.client.chat.completions.create(**kwargs)
            else:
                response = self._create_cancellable(cancel_event, **kwargs)
        except openai.APIStatusError as e:
            raise UpstreamError(f"Generation API error ({e.status_code}): {e.message}", status_code=e.status_code) from e
        except openai.APIError as e:
            raise UpstreamError(f"Generation API unreachable: {e}") from e

        try:
            raw_text = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise UpstreamError("Generation API returned a response without a message") from e
        if not raw_text or not raw_text.strip():
            raise UpstreamError("Generation API returned an empty message")

        return GenerationResult(
            source_code=extract_code_blocks(raw_text),
            raw_text=raw_text,
            model_id=getattr(response, "model", None) or self.model,
            usage=_usage_to_dict(getattr(response, "usage", None)),
        )
