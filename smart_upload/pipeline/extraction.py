from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from smart_upload.config.settings import PipelineConfig
from smart_upload.llm_client.base import Attachment, VisionLLMClient
from smart_upload.logging import get_logger
from smart_upload.pipeline.budget import BudgetSnapshot, SessionBudget
from smart_upload.pipeline.cutting_instructions import CuttingPlan, plan_cutting_instructions
from smart_upload.pipeline.quality_gates import evaluate_quality_gates
from smart_upload.pipeline.rendering import (
    PageRenderer,
    PyMuPDFPageRenderer,
    RenderOptions,
    sample_page_indices,
)
from smart_upload.pipeline.response_parsing import normalize_confidence, parse_model_response
from smart_upload.pipeline.routing import (
    RoutingDecision,
    detect_disagreements,
    needs_verification,
    route_confidence,
)
from smart_upload.prompts.manager import (
    ADJUDICATION_PROMPT,
    VERIFICATION_PROMPT,
    VISION_PROMPT,
    PromptManager,
    PromptSet,
)
from smart_upload.storage.models import ParseStatus, PassName
from smart_upload.utils.error_taxonomy import MalformedModelResponseError

logger = get_logger("extraction")

# Keys that only describe a pass, not the piece.
_PASS_ONLY_KEYS = frozenset({"verificationConfidence", "corrections"})


@dataclass(frozen=True, slots=True)
class PassResponse:
    pass_name: PassName
    model: str
    raw_text: str
    parse_status: ParseStatus
    error_message: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


PassResponseCallback = Callable[[PassResponse], None]


@dataclass(frozen=True, slots=True)
class ExtractionOutcome:
    metadata: dict[str, Any]
    plan: CuttingPlan
    confidence: int
    first_pass_confidence: int
    decision: RoutingDecision
    total_pages: int
    passes: list[str]
    disagreements: list[str] = field(default_factory=list)
    review_notes: list[str] = field(default_factory=list)
    corrections: str | None = None
    budget: BudgetSnapshot | None = None

    @property
    def auto_approved(self) -> bool:
        return self.decision is RoutingDecision.AUTO_APPROVED


class ExtractionPipeline:
    """Vision extraction, then verification and adjudication when needed.

    Every model call goes through the caller's ``SessionBudget``. A denied
    check raises ``BudgetExhaustedError`` before the call is made. Model
    output is parsed against the prompt schema and rejected when it does not
    match. Transport errors from the client propagate unchanged.
    """

    def __init__(
        self,
        *,
        llm_client: VisionLLMClient,
        renderer: PageRenderer | None = None,
        prompt_manager: PromptManager | None = None,
        render_options: RenderOptions | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.renderer = renderer or PyMuPDFPageRenderer()
        self.prompt_manager = prompt_manager or PromptManager()
        self.render_options = render_options or RenderOptions()

    def run(
        self,
        *,
        pdf_bytes: bytes,
        total_pages: int,
        config: PipelineConfig,
        budget: SessionBudget,
        fallback_instrument: str | None = None,
        on_pass_response: PassResponseCallback | None = None,
    ) -> ExtractionOutcome:
        passes: list[str] = []
        review_notes: list[str] = []
        disagreements: list[str] = []
        corrections: str | None = None

        vision_attachments = self._vision_attachments(pdf_bytes, total_pages, config)
        first = self._vision_pass(
            attachments=vision_attachments,
            total_pages=total_pages,
            config=config,
            budget=budget,
            on_pass_response=on_pass_response,
        )
        passes.append("vision")
        first_confidence = normalize_confidence(first.get("confidenceScore"))
        metadata = first
        confidence = first_confidence
        logger.info(
            "vision pass confidence %d",
            first_confidence,
            extra={"stage": "vision", "metrics": {"confidence": first_confidence}},
        )

        if route_confidence(first_confidence, config) is RoutingDecision.FAILED_LOW_CONFIDENCE:
            review_notes.append(
                f"First-pass confidence {first_confidence} is below the skip threshold "
                f"({config.skip_parse_threshold:g}); manual entry required"
            )
            return ExtractionOutcome(
                metadata=first,
                plan=CuttingPlan(instructions=[]),
                confidence=first_confidence,
                first_pass_confidence=first_confidence,
                decision=RoutingDecision.FAILED_LOW_CONFIDENCE,
                total_pages=total_pages,
                passes=passes,
                review_notes=review_notes,
                budget=budget.snapshot(),
            )

        adjudicated = False
        requires_human_review = False
        if needs_verification(first_confidence, config):
            verification_attachments = self._verification_attachments(
                pdf_bytes, total_pages, config
            )
            second = self._verification_pass(
                first=first,
                attachments=verification_attachments,
                total_pages=total_pages,
                config=config,
                budget=budget,
                on_pass_response=on_pass_response,
            )
            passes.append("verification")
            corrections = _corrections_text(second.get("corrections"))
            if corrections:
                review_notes.append(f"Verification corrected: {corrections}")

            disagreements = detect_disagreements(first, second)
            if disagreements:
                adjudication = self._adjudication_pass(
                    first=first,
                    second=second,
                    disagreements=disagreements,
                    attachments=verification_attachments,
                    total_pages=total_pages,
                    config=config,
                    budget=budget,
                    on_pass_response=on_pass_response,
                )
                passes.append("adjudication")
                adjudicated = True
                metadata = dict(adjudication["adjudicatedMetadata"])
                confidence = normalize_confidence(adjudication.get("finalConfidence"))
                requires_human_review = bool(adjudication.get("requiresHumanReview"))
                review_notes.append(
                    f"Adjudicated {len(disagreements)} disagreement(s): "
                    + "; ".join(disagreements)
                )
                notes = adjudication.get("adjudicationNotes")
                if isinstance(notes, str) and notes.strip():
                    review_notes.append(f"Adjudicator: {notes.strip()}")
            else:
                metadata = {
                    **first,
                    **{
                        key: value
                        for key, value in second.items()
                        if key not in _PASS_ONLY_KEYS
                    },
                }
                confidence = normalize_confidence(second.get("verificationConfidence"))

        plan = plan_cutting_instructions(
            metadata.get("cuttingInstructions"),
            total_pages=total_pages,
            file_type=_optional_str(metadata.get("fileType")),
            is_multi_part=bool(metadata.get("isMultiPart")),
            fallback_instrument=fallback_instrument,
            full_score_fallback_max_pages=config.full_score_fallback_max_pages,
            large_gap_pages=config.large_gap_pages,
        )
        if plan.violations:
            review_notes.extend(f"Cutting instructions rejected: {v}" for v in plan.violations)
        if plan.used_fallback:
            review_notes.append("No cutting instructions returned; used a single-part fallback")
        if plan.filled_gaps:
            gaps = ", ".join(
                f"{start}" if start == end else f"{start}-{end}"
                for start, end in plan.filled_gaps
            )
            review_notes.append(f"Uncovered pages filled as unlabelled parts: {gaps}")
            if plan.large_gap:
                review_notes.append(
                    f"A gap of more than {config.large_gap_pages} pages was filled"
                )
            confidence = min(confidence, int(config.auto_approve_threshold) - 1)

        gate_failures = evaluate_quality_gates(
            plan.instructions,
            file_type=_optional_str(metadata.get("fileType")),
            is_multi_part=bool(metadata.get("isMultiPart")),
            total_pages=total_pages,
            max_pages_per_part=config.max_pages_per_part,
        )
        review_notes.extend(f"Quality gate: {failure}" for failure in gate_failures)

        decision = route_confidence(confidence, config)
        blocked = (
            bool(corrections)
            or adjudicated
            or requires_human_review
            or bool(plan.filled_gaps)
            or bool(gate_failures)
            or not plan.valid
            or _key_fields_changed(first, metadata)
        )
        if decision is RoutingDecision.AUTO_APPROVED and blocked:
            decision = RoutingDecision.NEEDS_REVIEW
        if decision is RoutingDecision.FAILED_LOW_CONFIDENCE:
            review_notes.append(
                f"Final confidence {confidence} is below the skip threshold "
                f"({config.skip_parse_threshold:g}); manual entry required"
            )

        logger.info(
            "extraction routed %s",
            decision.value,
            extra={
                "stage": "routing",
                "metrics": {
                    "confidence": confidence,
                    "passes": len(passes),
                    "disagreements": len(disagreements),
                    "parts": len(plan.instructions),
                },
            },
        )
        return ExtractionOutcome(
            metadata=metadata,
            plan=plan,
            confidence=confidence,
            first_pass_confidence=first_confidence,
            decision=decision,
            total_pages=total_pages,
            passes=passes,
            disagreements=disagreements,
            review_notes=review_notes,
            corrections=corrections,
            budget=budget.snapshot(),
        )

    def _vision_pass(
        self,
        *,
        attachments: list[Attachment],
        total_pages: int,
        config: PipelineConfig,
        budget: SessionBudget,
        on_pass_response: PassResponseCallback | None,
    ) -> dict[str, Any]:
        prompt_set = self._prompt_set(VISION_PROMPT, config)
        if config.send_full_pdf:
            user_prompt = prompt_set.render_user_prompt("full_pdf", totalPages=total_pages)
        else:
            labels = [attachment.filename or "" for attachment in attachments]
            user_prompt = prompt_set.render_user_prompt(
                totalPages=total_pages,
                sampledPages=len(attachments),
                pageList=", ".join(labels),
            )

        return self._call_pass(
            pass_name="vision",
            prompt_set=prompt_set,
            user_prompt=user_prompt,
            attachments=attachments,
            model=config.vision_model,
            budget=budget,
            on_pass_response=on_pass_response,
        )

    def _verification_pass(
        self,
        *,
        first: dict[str, Any],
        attachments: list[Attachment],
        total_pages: int,
        config: PipelineConfig,
        budget: SessionBudget,
        on_pass_response: PassResponseCallback | None,
    ) -> dict[str, Any]:
        prompt_set = self._prompt_set(VERIFICATION_PROMPT, config)
        user_prompt = prompt_set.render_user_prompt(
            pageCount=total_pages,
            originalMetadataJson=json.dumps(first, ensure_ascii=False, indent=2),
        )
        return self._call_pass(
            pass_name="verification",
            prompt_set=prompt_set,
            user_prompt=user_prompt,
            attachments=attachments,
            model=config.verification_model,
            budget=budget,
            on_pass_response=on_pass_response,
        )

    def _adjudication_pass(
        self,
        *,
        first: dict[str, Any],
        second: dict[str, Any],
        disagreements: Sequence[str],
        attachments: list[Attachment],
        total_pages: int,
        config: PipelineConfig,
        budget: SessionBudget,
        on_pass_response: PassResponseCallback | None,
    ) -> dict[str, Any]:
        prompt_set = self._prompt_set(ADJUDICATION_PROMPT, config)
        user_prompt = prompt_set.render_user_prompt(
            pageCount=total_pages,
            firstPassMetadata=json.dumps(first, ensure_ascii=False, indent=2),
            secondPassMetadata=json.dumps(second, ensure_ascii=False, indent=2),
            disagreements="\n".join(f"- {item}" for item in disagreements),
        )
        return self._call_pass(
            pass_name="adjudication",
            prompt_set=prompt_set,
            user_prompt=user_prompt,
            attachments=attachments,
            model=config.adjudicator_model,
            budget=budget,
            on_pass_response=on_pass_response,
        )

    def _call_pass(
        self,
        *,
        pass_name: PassName,
        prompt_set: PromptSet,
        user_prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        budget: SessionBudget,
        on_pass_response: PassResponseCallback | None,
    ) -> dict[str, Any]:
        budget.require()

        started = time.perf_counter()
        result = None
        try:
            result = self.llm_client.generate_json(
                system_prompt=prompt_set.system_prompt_text,
                user_content=user_prompt,
                attachments=attachments,
                json_schema=prompt_set.schema,
                model=model,
                params={},
                run_meta={
                    "schema_name": prompt_set.schema_name,
                    "pass_name": pass_name,
                    "prompt_version": prompt_set.version,
                },
            )
        except Exception as error:  # noqa: BLE001
            _emit(
                on_pass_response,
                PassResponse(
                    pass_name=pass_name,
                    model=model,
                    raw_text="",
                    parse_status="error",
                    error_message=f"{error.__class__.__name__}: {error}",
                ),
            )
            raise
        finally:
            budget.record(result.prompt_tokens if result is not None else 0)

        duration_ms = (time.perf_counter() - started) * 1000
        try:
            parsed = parse_model_response(result.raw_text, schema=prompt_set.schema)
        except MalformedModelResponseError as error:
            _emit(
                on_pass_response,
                PassResponse(
                    pass_name=pass_name,
                    model=model,
                    raw_text=result.raw_text,
                    parse_status="invalid",
                    error_message=str(error),
                    usage=dict(result.usage_normalized),
                ),
            )
            logger.warning(
                "%s pass returned malformed output: %s",
                pass_name,
                error,
                extra={"stage": pass_name},
            )
            raise

        _emit(
            on_pass_response,
            PassResponse(
                pass_name=pass_name,
                model=model,
                raw_text=result.raw_text,
                parse_status="ok",
                usage=dict(result.usage_normalized),
            ),
        )
        logger.info(
            "%s pass completed",
            pass_name,
            extra={
                "stage": pass_name,
                "duration_ms": round(duration_ms, 1),
                "metrics": {
                    "prompt_tokens": result.prompt_tokens,
                    "llm_calls": budget.llm_calls,
                    "input_tokens": budget.input_tokens,
                },
            },
        )
        return parsed

    def _prompt_set(self, prompt_name: str, config: PipelineConfig) -> PromptSet:
        return self.prompt_manager.load_prompt_set(
            prompt_name=prompt_name, version=config.prompt_version
        )

    def _vision_attachments(
        self, pdf_bytes: bytes, total_pages: int, config: PipelineConfig
    ) -> list[Attachment]:
        if config.send_full_pdf:
            return [_pdf_attachment(pdf_bytes)]
        indices = sample_page_indices(total_pages, config.max_sampled_pages)
        return self._page_attachments(pdf_bytes, indices)

    def _verification_attachments(
        self, pdf_bytes: bytes, total_pages: int, config: PipelineConfig
    ) -> list[Attachment]:
        if config.send_full_pdf:
            return [_pdf_attachment(pdf_bytes)]
        indices = list(range(min(total_pages, config.max_verification_pages)))
        return self._page_attachments(pdf_bytes, indices)

    def _page_attachments(self, pdf_bytes: bytes, indices: list[int]) -> list[Attachment]:
        images = self.renderer.render(pdf_bytes, indices, self.render_options)
        if len(images) != len(indices):
            raise RuntimeError(
                f"renderer returned {len(images)} image(s) for {len(indices)} page(s)"
            )
        return [
            Attachment(
                mime_type=self.render_options.mime_type,
                data_base64=image,
                filename=f"Original Page {index + 1}",
            )
            for index, image in zip(indices, images)
        ]


def _pdf_attachment(pdf_bytes: bytes) -> Attachment:
    return Attachment(
        mime_type="application/pdf",
        data_base64=base64.b64encode(pdf_bytes).decode("ascii"),
        filename="source.pdf",
    )


def _emit(callback: PassResponseCallback | None, response: PassResponse) -> None:
    if callback is not None:
        callback(response)


def _corrections_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    text = json.dumps(value, ensure_ascii=False)
    return None if text in {"[]", "{}", '""'} else text


def _key_fields_changed(first: dict[str, Any], final: dict[str, Any]) -> bool:
    if first is final:
        return False
    return bool(detect_disagreements(first, final))


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
