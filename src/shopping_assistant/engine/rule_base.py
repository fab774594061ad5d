"""
Rule Base and Working Memory for the inference engine.

The rule base indexes rules by id, by type and by descending priority
(active rules only, ties in insertion order). Working memory is the fact
store rules write to during a pass, with an append-only change history.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .expressions import RuleExpression


class ActionType(str, Enum):
    SET_VARIABLE = "SET_VARIABLE"
    ADD_DISCOUNT = "ADD_DISCOUNT"
    ADD_RECOMMENDATION = "ADD_RECOMMENDATION"
    UPDATE_CART = "UPDATE_CART"


@dataclass
class RuleAction:
    """What a rule does when it fires."""
    type: ActionType | str
    variable: Optional[str] = None
    value: Any = None
    item: Any = None
    params: dict = field(default_factory=dict)


@dataclass
class Rule:
    """An engine-level rule."""
    id: str
    name: str
    type: str = "GENERAL"
    priority: int = 0  # higher fires first
    condition: Optional[RuleExpression] = None
    action: Optional[RuleAction] = None
    active: bool = True
    created_at: datetime = field(default_factory=datetime.now)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        action = None
        if self.action is not None:
            action_type = self.action.type
            action = {
                "type": action_type.value if isinstance(action_type, ActionType) else action_type,
                "variable": self.action.variable,
                "value": self.action.value,
            }
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "priority": self.priority,
            "condition": str(self.condition) if self.condition is not None else None,
            "action": action,
            "active": self.active,
            "created_at": self.created_at.isoformat(),
        }


class RuleDefinition:
    """Fluent builder for Rule."""

    def __init__(self, rule_id: str, name: str):
        self._rule = Rule(id=rule_id, name=name)

    @classmethod
    def create(cls, rule_id: str, name: str) -> 'RuleDefinition':
        return cls(rule_id, name)

    def set_type(self, rule_type: str) -> 'RuleDefinition':
        self._rule.type = rule_type
        return self

    def set_priority(self, priority: int) -> 'RuleDefinition':
        self._rule.priority = priority
        return self

    def set_condition(self, condition: RuleExpression) -> 'RuleDefinition':
        self._rule.condition = condition
        return self

    def set_action(self, action: RuleAction) -> 'RuleDefinition':
        self._rule.action = action
        return self

    def set_active(self, active: bool) -> 'RuleDefinition':
        self._rule.active = active
        return self

    def set_metadata(self, key: str, value: Any) -> 'RuleDefinition':
        self._rule.metadata[key] = value
        return self

    def build(self) -> Rule:
        if self._rule.action is None:
            raise ValueError("Rule must have an action")
        return self._rule


class RuleBase:
    """Storage and indexing of rules."""

    def __init__(self):
        self._rules: dict[str, Rule] = {}
        self._rules_by_type: dict[str, list[Rule]] = {}
        self._rules_by_priority: list[Rule] = []

    def add_rule(self, rule: Rule):
        """Add or replace a rule; replacing keeps its original position."""
        if rule.id in self._rules:
            self._unindex_type(self._rules[rule.id])
        self._rules[rule.id] = rule
        self._rules_by_type.setdefault(rule.type, []).append(rule)
        self._update_priority_index()

    def remove_rule(self, rule_id: str) -> Optional[Rule]:
        """Hard delete. Returns the removed rule, if any."""
        rule = self._rules.pop(rule_id, None)
        if rule is not None:
            self._unindex_type(rule)
            self._update_priority_index()
        return rule

    def deactivate_rule(self, rule_id: str) -> bool:
        """Soft delete: the rule stays retrievable but never fires."""
        return self.set_active(rule_id, False)

    def set_active(self, rule_id: str, active: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        rule.active = active
        self._update_priority_index()
        return True

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    def get_all_rules(self) -> list[Rule]:
        return list(self._rules.values())

    def get_rules_by_type(self, rule_type: str) -> list[Rule]:
        return list(self._rules_by_type.get(rule_type, []))

    def get_rules_by_priority(self) -> list[Rule]:
        return list(self._rules_by_priority)

    def _unindex_type(self, rule: Rule):
        type_rules = self._rules_by_type.get(rule.type)
        if type_rules is None:
            return
        type_rules[:] = [r for r in type_rules if r.id != rule.id]
        if not type_rules:
            del self._rules_by_type[rule.type]

    def _update_priority_index(self):
        # sorted() is stable: equal priorities keep insertion order
        self._rules_by_priority = sorted(
            (r for r in self._rules.values() if r.active),
            key=lambda r: r.priority,
            reverse=True,
        )

    def clear(self):
        self._rules.clear()
        self._rules_by_type.clear()
        self._rules_by_priority = []

    def __len__(self) -> int:
        return len(self._rules)

    def get_statistics(self) -> dict:
        return {
            "total_rules": len(self._rules),
            "active_rules": len(self._rules_by_priority),
            "rule_types": list(self._rules_by_type.keys()),
            "rules_by_type": {t: len(rules) for t, rules in self._rules_by_type.items()},
        }


@dataclass(frozen=True)
class FactChange:
    """One entry of the working-memory history."""
    action: str  # ADD_FACT or REMOVE_FACT
    key: str
    old_value: Any
    new_value: Any
    timestamp: datetime


class WorkingMemory:
    """Current facts plus an append-only change log."""

    def __init__(self):
        self._facts: dict[str, Any] = {}
        self._history: list[FactChange] = []

    def add_fact(self, key: str, value: Any):
        old_value = self._facts.get(key)
        self._facts[key] = value
        self._history.append(FactChange('ADD_FACT', key, old_value, value, datetime.now()))

    def remove_fact(self, key: str):
        old_value = self._facts.pop(key, None)
        self._history.append(FactChange('REMOVE_FACT', key, old_value, None, datetime.now()))

    def get_fact(self, key: str, default=None) -> Any:
        return self._facts.get(key, default)

    def has_fact(self, key: str) -> bool:
        return key in self._facts

    def get_all_facts(self) -> dict[str, Any]:
        return dict(self._facts)

    def get_history(self) -> tuple[FactChange, ...]:
        return tuple(self._history)

    def clear(self):
        self._facts.clear()
        self._history = []

    def __len__(self) -> int:
        return len(self._facts)
