"""
Inference Engine - forward and backward chaining over a RuleBase.

One forward pass loops Scanning → Conflict Resolution → Firing until no
applicable rule is left unfired or max_iterations is hit. A rule fires at
most once per pass. Failures in a single rule's condition or action are
logged and recorded; they never abort the pass.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from ..utils.logger import get_logger
from .context import ShoppingContext
from .expressions import AndExpression, RuleExpression, count_conditions
from .rule_base import ActionType, Rule, RuleAction, RuleBase, WorkingMemory

logger = get_logger("engine.inference")

Goal = Union[RuleExpression, Callable[[ShoppingContext], bool]]


class ConflictResolution(str, Enum):
    PRIORITY = "PRIORITY"
    SPECIFICITY = "SPECIFICITY"
    RECENCY = "RECENCY"


@dataclass
class TraceEntry:
    """Record of one rule firing."""
    rule_id: str
    rule_name: str
    timestamp: datetime
    success: bool = False
    context_before: dict = field(default_factory=dict)
    context_after: Optional[dict] = None
    error: Optional[str] = None


@dataclass
class ForwardChainResult:
    fired_rules: list[str]
    iterations: int
    context: ShoppingContext


@dataclass
class BackwardChainResult:
    success: bool
    goal: Any = None
    rule_chain: list[str] = field(default_factory=list)
    reason: Optional[str] = None


class InferenceEngine:
    """
    Rule evaluation and execution.

    Holds its own WorkingMemory and trace, so an instance should be scoped to
    one evaluation (or access to it serialized).
    """

    def __init__(
        self,
        rule_base: RuleBase,
        conflict_resolution: ConflictResolution | str = ConflictResolution.PRIORITY,
        max_depth: int = 10,
    ):
        self.rule_base = rule_base
        self.working_memory = WorkingMemory()
        self.conflict_resolution = ConflictResolution(conflict_resolution)
        self.max_depth = max_depth
        self.execution_trace: list[TraceEntry] = []

    # Forward chaining - data-driven reasoning

    def forward_chain(self, context: ShoppingContext, max_iterations: int = 100) -> ForwardChainResult:
        fired: list[str] = []
        fired_ids: set[str] = set()
        iterations = 0

        while iterations < max_iterations:
            iterations += 1
            candidates = [r for r in self.find_applicable_rules(context) if r.id not in fired_ids]
            rule = self.resolve_conflict(candidates)
            if rule is None:
                break
            self.fire_rule(rule, context)
            fired.append(rule.id)
            fired_ids.add(rule.id)

        return ForwardChainResult(fired_rules=fired, iterations=iterations, context=context)

    def find_applicable_rules(self, context: ShoppingContext) -> list[Rule]:
        """Active rules whose condition holds, in priority order."""
        applicable = []
        for rule in self.rule_base.get_rules_by_priority():
            try:
                if rule.active and (rule.condition is None or rule.condition.interpret(context)):
                    applicable.append(rule)
            except Exception:
                logger.exception(f"Error evaluating rule {rule.id}")
        return applicable

    def resolve_conflict(self, rules: list[Rule]) -> Optional[Rule]:
        if not rules:
            return None
        if len(rules) == 1:
            return rules[0]

        if self.conflict_resolution == ConflictResolution.SPECIFICITY:
            best = rules[0]
            for rule in rules[1:]:
                if count_conditions(rule.condition) > count_conditions(best.condition):
                    best = rule
            return best

        if self.conflict_resolution == ConflictResolution.RECENCY:
            best = rules[0]
            for rule in rules[1:]:
                if rule.created_at > best.created_at:
                    best = rule
            return best

        # PRIORITY: candidates are already in priority order
        return rules[0]

    def fire_rule(self, rule: Rule, context: ShoppingContext) -> TraceEntry:
        trace = TraceEntry(
            rule_id=rule.id,
            rule_name=rule.name,
            timestamp=datetime.now(),
            context_before=context.snapshot(),
        )

        try:
            if rule.action is not None:
                self.execute_action(rule.action, context)

            self.working_memory.add_fact(f"rule_fired_{rule.id}", {
                "rule": rule.name,
                "timestamp": datetime.now(),
            })
            trace.success = True
            trace.context_after = context.snapshot()
        except Exception as e:
            logger.exception(f"Error firing rule {rule.id}")
            trace.success = False
            trace.error = str(e)

        self.execution_trace.append(trace)
        return trace

    def execute_action(self, action: RuleAction, context: ShoppingContext):
        action_type = action.type

        if action_type == ActionType.SET_VARIABLE:
            context.set_variable(action.variable, action.value)

        elif action_type == ActionType.ADD_DISCOUNT:
            context.applied_discounts.append(action)

        elif action_type == ActionType.ADD_RECOMMENDATION:
            context.recommendations.append(action.item)

        elif action_type == ActionType.UPDATE_CART:
            # Evaluation never mutates the cart; the caller decides what to do
            context.cart_updates.append(dict(action.params))

        else:
            logger.warning(f"Unknown action type: {action_type}")

    # Backward chaining - goal-driven reasoning

    def backward_chain(self, goal: Goal, context: ShoppingContext, depth: int = 0,
                       _in_progress: Optional[frozenset] = None) -> BackwardChainResult:
        """
        Try to make `goal` hold by firing rules, recursing into the
        sub-conditions of rules whose condition does not hold yet.
        """
        in_progress = _in_progress or frozenset()

        if depth >= self.max_depth:
            return BackwardChainResult(success=False, goal=goal, reason="Max depth reached")

        if self.is_goal_satisfied(goal, context):
            return BackwardChainResult(success=True, goal=goal)

        for rule in self.find_rules_for_goal(goal):
            if rule.id in in_progress:
                continue

            chain: list[str] = []
            if not self._condition_holds(rule, context):
                satisfied = True
                for subgoal in self.extract_subgoals(rule.condition):
                    sub_result = self.backward_chain(subgoal, context, depth + 1, in_progress | {rule.id})
                    if not sub_result.success:
                        satisfied = False
                        break
                    chain.extend(sub_result.rule_chain)
                if not satisfied:
                    continue

            self.fire_rule(rule, context)
            chain.append(rule.id)
            if self.is_goal_satisfied(goal, context):
                return BackwardChainResult(success=True, goal=goal, rule_chain=chain)

        return BackwardChainResult(success=False, goal=goal, reason="No applicable rules")

    def _condition_holds(self, rule: Rule, context: ShoppingContext) -> bool:
        if rule.condition is None:
            return True
        try:
            return rule.condition.interpret(context)
        except Exception:
            logger.exception(f"Error evaluating rule {rule.id}")
            return False

    def is_goal_satisfied(self, goal: Goal, context: ShoppingContext) -> bool:
        try:
            if isinstance(goal, RuleExpression):
                return goal.interpret(context)
            if callable(goal):
                return bool(goal(context))
        except Exception:
            logger.exception("Error evaluating goal")
        return False

    def find_rules_for_goal(self, goal: Goal) -> list[Rule]:
        """Candidate rules for a goal: every active rule, in priority order."""
        return self.rule_base.get_rules_by_priority()

    def extract_subgoals(self, condition: Optional[RuleExpression]) -> list[RuleExpression]:
        if condition is None:
            return []
        if isinstance(condition, AndExpression):
            return list(condition.expressions)
        return [condition]

    # Explanation and bookkeeping

    def explain_reasoning(self, rule_id: str) -> list[dict]:
        return [
            {
                "rule": trace.rule_name,
                "when": trace.timestamp,
                "success": trace.success,
                "error": trace.error,
                "changes": self.compare_contexts(trace.context_before, trace.context_after or {}),
            }
            for trace in self.execution_trace
            if trace.rule_id == rule_id
        ]

    @staticmethod
    def compare_contexts(before: dict, after: dict) -> list[dict]:
        changes = []
        before_vars = before.get("variables", {})
        for key, value in after.get("variables", {}).items():
            if key not in before_vars or before_vars[key] != value:
                changes.append({"variable": key, "before": before_vars.get(key), "after": value})
        for key in ("applied_discounts", "recommendations", "cart_updates"):
            if key in after and len(after[key]) != len(before.get(key, [])):
                changes.append({"variable": key, "before": len(before.get(key, [])), "after": len(after[key])})
        return changes

    def reset(self):
        self.working_memory.clear()
        self.execution_trace = []

    def get_statistics(self) -> dict:
        return {
            "conflict_resolution": self.conflict_resolution.value,
            "rules_fired": len(self.execution_trace),
            "successful_executions": len([t for t in self.execution_trace if t.success]),
            "failed_executions": len([t for t in self.execution_trace if not t.success]),
            "working_memory_size": len(self.working_memory),
        }
