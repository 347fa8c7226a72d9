"""
Styling orchestrator: analyze -> collage -> (style -> judge)* -> accept or fallback.

Gemini calls go through the ``gemini`` module and image work through ``compositor``;
both are looked up at call time so tests can monkeypatch them.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import compositor, config, gemini
from .errors import ConfigurationError, GenerationError, QuotaExceeded, StylistError, ValidationError
from .still_image import StillImage

logger = logging.getLogger(__name__)

NO_RESULT_MESSAGE = (
    "We couldn't get a perfect result. Please try again with a clearer or different photo "
    "of the model for better results."
)
QUOTA_MESSAGE = "The default API quota has been exceeded. Please provide your own key to continue."


class StepStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    WARNING = "warning"
    ERROR = "error"


class RunState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    COMPOSITING = "compositing"
    STYLING = "styling"
    JUDGING = "judging"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    FILTERING_FALLBACK = "filtering_fallback"
    ACCEPTED = "accepted"
    FALLBACK_READY = "fallback_ready"
    ALL_FAILED = "all_failed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessStep:
    id: int
    status: StepStatus
    title: str
    description: str
    image: Optional[StillImage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "image_url": self.image.to_data_uri() if self.image else None,
        }


class ProgressTrace:
    """
    Ordered log of steps. Steps are only ever appended, and only the last one
    may be updated afterwards.
    """

    def __init__(self, listener: Optional[Callable[[List[ProcessStep]], None]] = None):
        self._steps: List[ProcessStep] = []
        self._listener = listener

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> List[ProcessStep]:
        return list(self._steps)

    @property
    def last(self) -> Optional[ProcessStep]:
        return self._steps[-1] if self._steps else None

    def add(self, status: StepStatus, title: str, description: str,
            image: Optional[StillImage] = None) -> ProcessStep:
        step = ProcessStep(id=len(self._steps) + 1, status=status, title=title, description=description, image=image)
        self._steps.append(step)
        self._notify()
        return step

    def update_last(self, **changes: Any) -> Optional[ProcessStep]:
        if not self._steps:
            return None
        self._steps[-1] = replace(self._steps[-1], **changes)
        self._notify()
        return self._steps[-1]

    def _notify(self) -> None:
        if self._listener is not None:
            self._listener(self.steps)


@dataclass
class AttemptRecord:
    attempt: int
    generated: StillImage
    cropped: Optional[StillImage] = None
    decision: Optional[str] = None
    feedback: str = ""


@dataclass
class RunResult:
    steps: List[ProcessStep]
    state: RunState
    final_image: Optional[StillImage] = None
    fallback_images: Optional[List[StillImage]] = None
    error: Optional[str] = None
    needs_api_key: bool = False
    attempts: List[AttemptRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "final_image": self.final_image.to_data_uri() if self.final_image else None,
            "fallback_images": [img.to_data_uri() for img in self.fallback_images]
            if self.fallback_images else None,
            "error": self.error,
            "needs_api_key": self.needs_api_key,
            "attempts": len(self.attempts),
            "steps": [step.to_dict() for step in self.steps],
        }


class Stylist:
    """
    Runs one styling job. A Stylist instance is single-use; create a new one per run.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        on_progress: Optional[Callable[[List[ProcessStep]], None]] = None,
    ):
        self.api_key = api_key
        self.max_retries = max_retries
        self.trace = ProgressTrace(on_progress)
        self.attempts: List[AttemptRecord] = []
        self.state = RunState.IDLE

    def _enter(self, state: RunState) -> None:
        logger.info(f"Styling run: {self.state.value} -> {state.value}")
        self.state = state

    def _result(self, **outcome: Any) -> RunResult:
        return RunResult(steps=self.trace.steps, state=self.state, attempts=list(self.attempts), **outcome)

    async def run(self, model_image: Optional[StillImage], item_image: Optional[StillImage]) -> RunResult:
        if model_image is None or item_image is None:
            raise ValidationError("Please provide both a fashion item and a model image.")
        if self.state is not RunState.IDLE:
            raise RuntimeError("Stylist instances are single-use")

        try:
            max_retries = self.max_retries if self.max_retries is not None else config.get_max_retries()
            if max_retries < 1:
                raise ConfigurationError(f"max_retries must be >= 1, got {max_retries}")
            api_key = gemini.resolve_api_key(self.api_key)
        except ConfigurationError as e:
            self._enter(RunState.FAILED)
            self.trace.add(StepStatus.ERROR, "Configuration Error", str(e))
            return self._result(error=f"Generation failed: {e}")

        try:
            return await self._run(model_image, item_image, api_key, max_retries)
        except QuotaExceeded as e:
            logger.warning(f"Styling run stopped by quota: {e}")
            self._enter(RunState.FAILED)
            self.trace.update_last(
                status=StepStatus.ERROR,
                title="API Quota Exceeded",
                description="The default API key has hit its usage limit.",
            )
            return self._result(error=QUOTA_MESSAGE, needs_api_key=True)
        except StylistError as e:
            logger.error(f"Styling run failed in state {self.state.value}: {e}")
            self._enter(RunState.FAILED)
            self.trace.add(StepStatus.ERROR, "Process Failed", str(e))
            return self._result(error=f"Generation failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in styling run (state {self.state.value}): {e}", exc_info=True)
            self._enter(RunState.FAILED)
            self.trace.add(StepStatus.ERROR, "Process Failed", str(e))
            return self._result(error=f"Generation failed: {e}")

    async def _run(self, model: StillImage, item: StillImage, api_key: str, max_retries: int) -> RunResult:
        trace = self.trace

        # 1. Analyze color
        self._enter(RunState.ANALYZING)
        trace.add(StepStatus.PROCESSING, "Analyzing Fashion Item",
                  "AI is extracting precise color and texture details.")
        description = await gemini.analyze_color(item, api_key=api_key)
        trace.update_last(status=StepStatus.COMPLETE,
                          description=f"Analysis complete. Item description: {description}")

        # 2. Initial collage
        self._enter(RunState.COMPOSITING)
        trace.add(StepStatus.PROCESSING, "Preparing Images", "Creating an image collage for the AI stylist.")
        collage = await compositor.build_collage(model, item)
        trace.update_last(status=StepStatus.COMPLETE, title="Collage Created",
                          description="Images are ready for styling.", image=collage)

        latest: Optional[AttemptRecord] = None
        feedback = ""
        accepted = False

        for attempt in range(1, max_retries + 1):
            if attempt > 1 and latest is not None:
                self._enter(RunState.RETRYING)
                trace.add(StepStatus.PROCESSING, f"Preparing Retry Attempt {attempt}",
                          "Creating a new collage with the failed image for context.")
                collage = await compositor.build_retry_collage(model, item, latest.generated)
                trace.update_last(status=StepStatus.COMPLETE, title="Retry Collage Created",
                                  description="New collage is ready.", image=collage)

            # 3. Style
            self._enter(RunState.STYLING)
            trace.add(StepStatus.PROCESSING, f"AI Styling (Attempt {attempt}/{max_retries})",
                      "The AI is dressing the model. This may take a moment.")
            parts = await gemini.style_image(collage, description, feedback, api_key=api_key)
            generated = gemini.first_image(parts)
            if generated is None:
                message = "AI failed to generate an image."
                text = gemini.first_text(parts)
                if text:
                    message += f' Model\'s text response: "{text.strip()}"'
                raise GenerationError(message, GenerationError.NO_IMAGE)

            latest = AttemptRecord(attempt=attempt, generated=generated)
            self.attempts.append(latest)
            trace.update_last(status=StepStatus.COMPLETE, title=f"Styling Attempt {attempt} Complete",
                              description="Generated a new image.", image=generated)

            # 4. Judge the model half only
            self._enter(RunState.JUDGING)
            latest.cropped = await compositor.crop_left_half(generated)
            trace.add(StepStatus.PROCESSING, f"Quality Check (Attempt {attempt})",
                      "The AI Judge is reviewing the result for accuracy.")
            verdict = await gemini.judge_image(item, latest.cropped, description, api_key=api_key)
            latest.decision = verdict.decision
            latest.feedback = verdict.feedback

            if verdict.accepted:
                accepted = True
                trace.update_last(status=StepStatus.COMPLETE, title="Quality Check Passed",
                                  description=f"Judge's verdict: Accepted. {verdict.feedback}")
                break

            feedback = verdict.feedback
            trace.update_last(status=StepStatus.WARNING, title="Quality Check Failed",
                              description=f"Judge's feedback for retry: {verdict.feedback}")
            if attempt == max_retries:
                self._enter(RunState.EXHAUSTED)
                trace.add(StepStatus.ERROR, "Final Attempt Failed",
                          "The AI Judge did not accept the final image.")

        if accepted and latest is not None:
            self._enter(RunState.ACCEPTED)
            final_image = latest.cropped or await compositor.crop_left_half(latest.generated)
            logger.info(f"Styling accepted on attempt {latest.attempt}/{max_retries}")
            return self._result(final_image=final_image)

        return await self._fallback(model, api_key)

    async def _fallback(self, model: StillImage, api_key: str) -> RunResult:
        trace = self.trace
        self._enter(RunState.FILTERING_FALLBACK)
        trace.add(StepStatus.PROCESSING, "Initiating fallback check",
                  "The AI Judge was inconclusive. Checking if any attempts were successful...")

        if not self.attempts:
            self._enter(RunState.ALL_FAILED)
            trace.update_last(status=StepStatus.ERROR, title="Fallback Failed",
                              description="No images were generated to choose from.")
            return self._result(error=NO_RESULT_MESSAGE)

        history = [record.generated for record in self.attempts]
        changed = await gemini.filter_changed_images(model, history, api_key=api_key)
        if not changed:
            self._enter(RunState.ALL_FAILED)
            trace.update_last(status=StepStatus.ERROR, title="All Attempts Failed",
                              description="The AI was unable to change the model's clothing in any attempt.")
            return self._result(error=NO_RESULT_MESSAGE)

        # gather() returns results in argument order regardless of completion order
        fallback_images = list(await asyncio.gather(*(compositor.crop_left_half(img) for img in changed)))
        self._enter(RunState.FALLBACK_READY)
        trace.update_last(status=StepStatus.COMPLETE, title="Choose the Best Attempt",
                          description="The AI Judge couldn't decide. Please review the generated images "
                                      "and select your favorite.")
        logger.info(f"Fallback ready with {len(fallback_images)}/{len(history)} candidate(s)")
        return self._result(fallback_images=fallback_images)
