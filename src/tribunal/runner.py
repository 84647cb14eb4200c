"""Sequential multi-step test runner with adaptive retry on stalls."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import DEFAULT_MAX_TOKENS, TEST_RUNNER
from .errors import ProviderTimeoutError, StallError
from .models import EventTag, RetryPolicy, StreamRequest
from .service import StreamService

logger = logging.getLogger(__name__)

SHRINKABLE_KINDS = {StallError.kind, ProviderTimeoutError.kind}


@dataclass
class StepResult:
    index: int
    status: str  # completed | failed
    output: str = ""
    error: Optional[str] = None
    elapsed_ms: int = 0
    token_count: int = 0
    max_tokens_used: int = 0
    soft_success: bool = False
    attempts: int = 0


class TestRunner:
    """
    Runs a list of prompts against one model, one after another.

    A step that stalls keeps its output as a soft success once the output is
    longer than ``partial_threshold`` characters. Anything shorter is
    thrown away and the step is retried with a smaller token budget.
    """

    __test__ = False

    def __init__(self, service: StreamService, settings: Optional[Dict[str, Any]] = None):
        self.service = service
        settings = {**TEST_RUNNER, **(settings or {})}
        self.partial_threshold = int(settings["partial_threshold"])
        self.min_tokens = int(settings["min_tokens"])
        self.max_tokens = int(settings["max_tokens"])
        self.shrink_factor = float(settings["shrink_factor"])
        self.max_attempts = int(settings["max_attempts"])

    def clamp_tokens(self, tokens: int) -> int:
        return max(self.min_tokens, min(self.max_tokens, int(tokens)))

    async def run_step(
        self,
        index: int,
        prompt: str,
        model_id: str,
        user_id: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: Optional[str] = None,
    ) -> StepResult:
        budget = self.clamp_tokens(max_tokens)
        result = StepResult(index=index, status="failed")
        started = time.monotonic()

        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            result.max_tokens_used = budget
            request = StreamRequest(
                message=prompt,
                model_id=model_id,
                system_prompt=system_prompt,
                max_tokens=budget,
                retry_policy=RetryPolicy(max_retries=0),
                fallback_enabled=False,
            )
            text, tokens, terminal = await self.service.collect(
                request, user_id, request_type="test"
            )
            result.elapsed_ms = int((time.monotonic() - started) * 1000)
            error = terminal.error if terminal is not None else None

            if terminal is not None and terminal.tag is EventTag.DONE and not terminal.partial:
                result.status, result.output, result.token_count = "completed", text, tokens
                result.error = None
                return result

            if text and len(text) > self.partial_threshold:
                logger.info(
                    f"Step {index} for {model_id}: accepting {len(text)} chars of partial output"
                )
                result.status, result.output, result.token_count = "completed", text, tokens
                result.soft_success = True
                result.error = error.message if error else None
                return result

            result.error = error.message if error else "Stream ended without a terminal event"
            if error is None or error.kind not in SHRINKABLE_KINDS:
                break
            shrunk = self.clamp_tokens(budget * self.shrink_factor)
            logger.warning(
                f"Step {index} for {model_id} stalled ({error.kind}); "
                f"retrying with max_tokens {budget} -> {shrunk}"
            )
            budget = shrunk

        return result

    async def run_steps(
        self,
        model_id: str,
        steps: List[str],
        user_id: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: Optional[str] = None,
    ) -> List[StepResult]:
        """Run every step in order; a failed step does not stop the rest."""
        results = []
        for index, prompt in enumerate(steps):
            step = await self.run_step(index, prompt, model_id, user_id, max_tokens, system_prompt)
            logger.info(f"Step {index} for {model_id}: {step.status} after {step.attempts} attempt(s)")
            results.append(step)
        return results
