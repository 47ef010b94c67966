"""Cost tracking for model API usage."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

# Pricing per 1M tokens - adjust as needed
DEFAULT_PRICING = {
    "glm-4.7": {"input": 0.50, "output": 1.50},
    "glm-4-plus": {"input": 1.00, "output": 3.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "deepseek": {"input": 0.27, "output": 1.10},
    "claude": {"input": 3.00, "output": 15.00, "cache_write": 3.75, "cache_read": 0.30},
    "default": {"input": 0.50, "output": 1.50},
}


@dataclass
class APICall:
    """Record of a single model request."""

    timestamp: datetime
    model: str
    input_tokens: int
    output_tokens: int
    cache_write_tokens: int
    cache_read_tokens: int
    total_cost: float
    duration_ms: float
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_cost": round(self.total_cost, 6),
            "duration_ms": round(self.duration_ms, 1),
            "cancelled": self.cancelled,
        }


@dataclass
class CostSummary:
    """Summary of costs for a task."""

    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_write_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cost: float = 0.0
    total_duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cache_write_tokens": self.total_cache_write_tokens,
            "total_cache_read_tokens": self.total_cache_read_tokens,
            "total_cost": round(self.total_cost, 6),
            "total_duration_ms": round(self.total_duration_ms, 2),
        }

    def format_human(self) -> str:
        """Format for human display."""
        return (
            f"API Calls: {self.total_calls}\n"
            f"Tokens: {self.total_input_tokens:,} in / {self.total_output_tokens:,} out\n"
            f"Cache: {self.total_cache_write_tokens:,} written / {self.total_cache_read_tokens:,} read\n"
            f"Cost: ${self.total_cost:.4f}\n"
            f"Duration: {self.total_duration_ms / 1000:.2f}s"
        )


class CostTracker:
    """Track model costs and usage statistics for one task."""

    def __init__(self, pricing: Optional[Dict[str, Dict[str, float]]] = None):
        self.pricing = pricing or DEFAULT_PRICING
        self.calls: List[APICall] = []

    def get_pricing(self, model: str) -> Dict[str, float]:
        """Get pricing for a model. Supports exact and partial matching."""
        if model in self.pricing:
            return self.pricing[model]
        model_lower = model.lower()
        for key in self.pricing:
            if key != "default" and key.lower() in model_lower:
                return self.pricing[key]
        return self.pricing.get("default", {"input": 0.50, "output": 1.50})

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int,
                       cache_write_tokens: int = 0, cache_read_tokens: int = 0) -> float:
        price = self.get_pricing(model)
        return (
            input_tokens * price["input"]
            + output_tokens * price["output"]
            + cache_write_tokens * price.get("cache_write", price["input"])
            + cache_read_tokens * price.get("cache_read", price["input"])
        ) / 1_000_000

    def record_call(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: float,
        cache_write_tokens: int = 0,
        cache_read_tokens: int = 0,
        total_cost: Optional[float] = None,
        cancelled: bool = False,
    ) -> APICall:
        """Record a request; ``total_cost`` from the provider wins over the table."""
        if total_cost is None:
            total_cost = self.calculate_cost(
                model, input_tokens, output_tokens, cache_write_tokens, cache_read_tokens
            )
        call = APICall(
            timestamp=datetime.now(),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_write_tokens=cache_write_tokens,
            cache_read_tokens=cache_read_tokens,
            total_cost=total_cost,
            duration_ms=duration_ms,
            cancelled=cancelled,
        )
        self.calls.append(call)
        return call

    def get_summary(self) -> CostSummary:
        summary = CostSummary()
        for call in self.calls:
            summary.total_calls += 1
            summary.total_input_tokens += call.input_tokens
            summary.total_output_tokens += call.output_tokens
            summary.total_cache_write_tokens += call.cache_write_tokens
            summary.total_cache_read_tokens += call.cache_read_tokens
            summary.total_cost += call.total_cost
            summary.total_duration_ms += call.duration_ms
        return summary
