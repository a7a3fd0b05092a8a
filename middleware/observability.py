from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

import tiktoken

logger = logging.getLogger(__name__)


@dataclass
class CallMetrics:
    stage: str
    target: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None


@dataclass
class PipelineMetrics:
    request_id: str
    flow: str
    start_time: float = field(default_factory=time.time)
    calls: list[CallMetrics] = field(default_factory=list)
    subtasks: int = 0
    failed_subtasks: int = 0
    external_calls: int = 0
    outcome: str = "pending"

    @property
    def total_tokens(self) -> int:
        return sum(call.input_tokens + call.output_tokens for call in self.calls)

    @property
    def total_latency_ms(self) -> float:
        return (time.time() - self.start_time) * 1000.0

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "flow": self.flow,
            "outcome": self.outcome,
            "total_tokens": self.total_tokens,
            "total_latency_ms": round(self.total_latency_ms, 1),
            "subtasks": self.subtasks,
            "failed_subtasks": self.failed_subtasks,
            "external_calls": self.external_calls,
            "calls": [
                {
                    "stage": call.stage,
                    "target": call.target,
                    "tokens": call.input_tokens + call.output_tokens,
                    "latency_ms": round(call.latency_ms, 1),
                    "success": call.success,
                    "error": call.error,
                }
                for call in self.calls
            ],
        }


class TokenCounter:
    _encoders: dict[str, Any] = {}

    @classmethod
    def _get_encoder(cls, model: str):
        model_key = model or "gpt-4"
        if model_key in cls._encoders:
            return cls._encoders[model_key]
        try:
            encoder = tiktoken.encoding_for_model(model_key)
        except KeyError:
            try:
                encoder = tiktoken.get_encoding("cl100k_base")
            except Exception as exc:
                # Encodings are fetched on first use; offline hosts fall back to the heuristic.
                logger.debug(f"tiktoken encoding unavailable: {exc}")
                encoder = None
        except Exception as exc:
            logger.debug(f"tiktoken encoding unavailable: {exc}")
            encoder = None
        cls._encoders[model_key] = encoder
        return encoder

    @classmethod
    def count(cls, text: str, model: str = "gpt-4") -> int:
        if not text:
            return 0
        encoder = cls._get_encoder(model)
        if encoder is None:
            return max(1, len(text) // 4)
        try:
            return len(encoder.encode(text))
        except Exception:
            return max(1, len(text) // 4)


class PipelineTracker:
    def __init__(self, request_id: str, flow: str, model: str = "gpt-4"):
        self.metrics = PipelineMetrics(request_id=request_id, flow=flow)
        self.model = model

    @contextmanager
    def track_call(self, stage: str, target: str, prompt: str = ""):
        metric = CallMetrics(stage=stage, target=target)
        metric.input_tokens = TokenCounter.count(prompt, self.model)
        start = time.time()
        try:
            yield metric
        except Exception as exc:
            metric.success = False
            metric.error = str(exc)
            raise
        finally:
            metric.latency_ms = (time.time() - start) * 1000.0
            self.metrics.calls.append(metric)

    def record_output(self, metric: CallMetrics, text: str) -> None:
        metric.output_tokens = TokenCounter.count(text, self.model)

    def finalize(self, outcome: str) -> dict[str, Any]:
        self.metrics.outcome = outcome
        summary = self.metrics.to_log_dict()
        logger.info(f"Pipeline {self.metrics.flow} finished: {summary}")
        return summary
