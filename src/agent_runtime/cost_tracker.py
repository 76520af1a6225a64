"""Token and cost accounting for a session, with warn/stop thresholds."""

from __future__ import annotations

from dataclasses import dataclass

WARNING_THRESHOLD = 0.8


@dataclass(frozen=True)
class ModelPricing:
    """USD per one million tokens."""

    input: float
    output: float


MODEL_PRICING: dict[str, ModelPricing] = {
    # Anthropic
    "claude-sonnet-4-5-20250929": ModelPricing(3.0, 15.0),
    "claude-sonnet-4-20250514": ModelPricing(3.0, 15.0),
    "claude-3-5-sonnet-20241022": ModelPricing(3.0, 15.0),
    "claude-3-5-haiku-20241022": ModelPricing(1.0, 5.0),
    "claude-3-opus-20240229": ModelPricing(15.0, 75.0),
    # OpenAI
    "gpt-4o": ModelPricing(2.5, 10.0),
    "gpt-4o-mini": ModelPricing(0.15, 0.6),
    "gpt-4-turbo": ModelPricing(10.0, 30.0),
    "gpt-4": ModelPricing(30.0, 60.0),
    # Gemini
    "gemini-2.0-flash": ModelPricing(0.1, 0.4),
    "gemini-1.5-pro": ModelPricing(1.25, 5.0),
    "gemini-1.5-flash": ModelPricing(0.075, 0.3),
}

# Conservative estimate for models missing from the table.
DEFAULT_PRICING = ModelPricing(3.0, 15.0)


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "total": self.total}


@dataclass(frozen=True)
class LimitCheckResult:
    warning: bool = False
    exceeded: bool = False
    # Fraction of the limit used (1.0 == at the limit); None when no limit is configured.
    percentage: float | None = None
    limit_type: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class CostSnapshot:
    tokens: TokenUsage
    estimated_cost: float
    model: str
    limits: LimitCheckResult
    max_tokens: int | None = None
    max_cost: float | None = None


def _severity(percentage: float) -> int:
    if percentage >= 1.0:
        return 2
    if percentage >= WARNING_THRESHOLD:
        return 1
    return 0


class CostTracker:
    def __init__(self, model: str, *, max_tokens: int | None = None, max_cost: float | None = None):
        self._model = model
        self._pricing = MODEL_PRICING.get(model, DEFAULT_PRICING)
        self._max_tokens = max_tokens
        self._max_cost = max_cost
        self._input_tokens = 0
        self._output_tokens = 0

    @property
    def model(self) -> str:
        return self._model

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        self._input_tokens += max(0, int(input_tokens))
        self._output_tokens += max(0, int(output_tokens))

    def get_token_usage(self) -> TokenUsage:
        return TokenUsage(self._input_tokens, self._output_tokens)

    def get_estimated_cost(self) -> float:
        input_cost = self._input_tokens / 1_000_000 * self._pricing.input
        output_cost = self._output_tokens / 1_000_000 * self._pricing.output
        return input_cost + output_cost

    def get_pricing(self) -> ModelPricing:
        return self._pricing

    def has_limits(self) -> bool:
        return self._max_tokens is not None or self._max_cost is not None

    def check_limits(self) -> LimitCheckResult:
        """Evaluate every configured limit and report the most severe one.

        Token and cost percentages are computed independently. The limit with
        the higher severity wins; on equal severity tokens win when tripped,
        otherwise the limit closest to being hit is reported.
        """
        candidates: list[tuple[str, float]] = []
        if self._max_tokens is not None and self._max_tokens > 0:
            candidates.append(("tokens", self._total_tokens() / self._max_tokens))
        if self._max_cost is not None and self._max_cost > 0:
            candidates.append(("cost", self.get_estimated_cost() / self._max_cost))

        if not candidates:
            return LimitCheckResult()

        limit_type, percentage = candidates[0]
        for other_type, other_pct in candidates[1:]:
            current = _severity(percentage)
            other = _severity(other_pct)
            if other > current or (other == current == 0 and other_pct > percentage):
                limit_type, percentage = other_type, other_pct

        severity = _severity(percentage)
        message = self._limit_message(limit_type, percentage, severity) if severity else None
        return LimitCheckResult(
            warning=severity >= 1,
            exceeded=severity == 2,
            percentage=percentage,
            limit_type=limit_type,
            message=message,
        )

    def get_snapshot(self) -> CostSnapshot:
        return CostSnapshot(
            tokens=self.get_token_usage(),
            estimated_cost=self.get_estimated_cost(),
            model=self._model,
            limits=self.check_limits(),
            max_tokens=self._max_tokens,
            max_cost=self._max_cost,
        )

    def format_turn_summary(self, turn: int) -> str:
        tokens = self.get_token_usage()
        limits = self.check_limits()
        line = (
            f"Turn {turn} | Tokens: {tokens.total:,} (in: {tokens.input:,}, out: {tokens.output:,}) "
            f"| Cost: ${self.get_estimated_cost():.2f}"
        )
        if limits.percentage is not None:
            line += f" | Limit: {limits.percentage * 100:.0f}%"
            if limits.exceeded:
                line += " (exceeded)"
            elif limits.warning:
                line += " (warning)"
        return line

    def format_session_summary(self) -> str:
        tokens = self.get_token_usage()
        cost = self.get_estimated_cost()
        lines = [
            f"Total tokens: {tokens.total:,} (input: {tokens.input:,}, output: {tokens.output:,})",
            f"Estimated cost: ${cost:.4f} (model: {self._model})",
        ]
        if self._max_tokens:
            pct = tokens.total / self._max_tokens * 100
            lines.append(f"Token limit: {tokens.total:,} / {self._max_tokens:,} ({pct:.1f}%)")
        if self._max_cost:
            pct = cost / self._max_cost * 100
            lines.append(f"Cost limit: ${cost:.2f} / ${self._max_cost:.2f} ({pct:.1f}%)")
        return "\n".join(lines)

    def _total_tokens(self) -> int:
        return self._input_tokens + self._output_tokens

    def _limit_message(self, limit_type: str, percentage: float, severity: int) -> str:
        state = "exceeded" if severity == 2 else "warning"
        if limit_type == "tokens":
            total = self._total_tokens()
            return (
                f"Token limit {state}: {total:,} / {self._max_tokens:,} tokens "
                f"({percentage * 100:.0f}%)"
            )
        return (
            f"Cost limit {state}: ${self.get_estimated_cost():.2f} / ${self._max_cost:.2f} "
            f"({percentage * 100:.0f}%)"
        )
