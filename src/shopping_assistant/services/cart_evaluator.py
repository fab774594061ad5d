"""
Cart Evaluator - runs every evaluator over one cart and merges the results.

A failing evaluator is logged and recorded in `errors`; the others still
run and the evaluation always completes.
"""
from dataclasses import dataclass, field
from typing import Optional

from ..config.settings import Settings
from ..utils.logger import get_logger
from .evaluators import EvaluationRequest, Evaluator, potential_savings
from .pricing import price_breakdown

logger = get_logger("services.cart_evaluator")


@dataclass
class CartEvaluation:
    """Consolidated outcome of one evaluation pass."""
    discounts: dict = field(default_factory=dict)
    suggestions: list[dict] = field(default_factory=list)
    recommendations: list[dict] = field(default_factory=list)
    inventory_issues: list[dict] = field(default_factory=list)
    fired_rules: list[str] = field(default_factory=list)
    variables: dict = field(default_factory=dict)
    totals: dict = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def merge(self, source: str, contribution: Optional[dict]):
        if not contribution:
            return
        self.sources.append(source)
        self.discounts.update(contribution.get('discounts', {}))
        self.variables.update(contribution.get('variables', {}))
        self.fired_rules.extend(contribution.get('fired_rules', []))
        self.suggestions.extend(contribution.get('suggestions', []))
        self.recommendations.extend(contribution.get('recommendations', []))
        self.inventory_issues.extend(contribution.get('inventory_issues', []))

    def to_dict(self) -> dict:
        return {
            'discounts': self.discounts,
            'suggestions': self.suggestions,
            'recommendations': self.recommendations,
            'inventory_issues': self.inventory_issues,
            'fired_rules': self.fired_rules,
            'variables': self.variables,
            'totals': self.totals,
            'potential_savings': potential_savings(self.suggestions),
            'sources': self.sources,
            'errors': self.errors,
        }


class CartEvaluator:
    """Runs evaluators in descending priority; each one is isolated."""

    def __init__(self, evaluators: list[Evaluator], settings: Optional[Settings] = None):
        # sorted() is stable: equal priorities keep registration order
        self.evaluators = sorted(evaluators, key=lambda e: e.priority, reverse=True)
        self.settings = settings
        self.run_count = 0

    def evaluate(self, request: EvaluationRequest) -> CartEvaluation:
        evaluation = CartEvaluation()
        self.run_count += 1

        for evaluator in self.evaluators:
            try:
                if not evaluator.can_execute(request):
                    continue
                contribution = evaluator.evaluate(request)
            except Exception as e:
                logger.exception(f"Evaluator {evaluator.name} failed")
                evaluation.errors.append({'source': evaluator.name, 'error': str(e)})
                continue
            evaluation.merge(evaluator.name, contribution)

        if request.cart is not None:
            evaluation.totals = price_breakdown(request.cart, self.settings)
        return evaluation

    def get_statistics(self) -> dict:
        return {
            'evaluators': [{'name': e.name, 'priority': e.priority} for e in self.evaluators],
            'run_count': self.run_count,
        }
