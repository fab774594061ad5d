"""
Rules Service - CRUD operations for rule definitions.
Handles reading/writing rules.csv and loading the rules into a RuleBase.
"""
import csv
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..engine.rule_base import ActionType, Rule, RuleAction
from ..engine.rule_parser import RuleParseError, RuleParser, parse_value
from ..utils.logger import get_logger

logger = get_logger("services.rules")


@dataclass
class RuleRecord:
    """A rule as stored in rules.csv."""
    rule_id: str
    name: str
    type: str = "GENERAL"
    active: bool = True
    priority: int = 50
    condition: Optional[str] = None
    action_type: str = ActionType.SET_VARIABLE.value
    action_variable: Optional[str] = None
    action_value: str = ""
    notes: Optional[str] = None

    def to_csv_row(self) -> dict:
        """Convert to CSV row format."""
        return {
            'rule_id': self.rule_id,
            'name': self.name,
            'type': self.type or 'GENERAL',
            'active': 'true' if self.active else 'false',
            'priority': str(self.priority),
            'condition': self.condition or '',
            'action_type': self.action_type,
            'action_variable': self.action_variable or '',
            'action_value': str(self.action_value),
            'notes': self.notes or '',
        }

    @classmethod
    def from_csv_row(cls, row: dict) -> 'RuleRecord':
        """Create RuleRecord from CSV row."""
        return cls(
            rule_id=row.get('rule_id', ''),
            name=row.get('name', ''),
            type=row.get('type') or 'GENERAL',
            active=(row.get('active') or 'true').lower() == 'true',
            priority=int(row.get('priority') or 50),
            condition=row.get('condition') or None,
            action_type=row.get('action_type') or ActionType.SET_VARIABLE.value,
            action_variable=row.get('action_variable') or None,
            action_value=row.get('action_value', ''),
            notes=row.get('notes') or None,
        )

    def to_engine_rule(self) -> Rule:
        """Parse the condition and build the engine rule. Raises RuleParseError."""
        condition = RuleParser.parse(self.condition) if self.condition else None
        value = parse_value(self.action_value) if self.action_value != '' else None
        action_type = ActionType(self.action_type)

        if action_type == ActionType.ADD_RECOMMENDATION:
            action = RuleAction(type=action_type, item=value)
        elif action_type == ActionType.UPDATE_CART:
            action = RuleAction(type=action_type, params={'variable': self.action_variable, 'value': value})
        else:
            action = RuleAction(type=action_type, variable=self.action_variable, value=value)

        return Rule(
            id=self.rule_id,
            name=self.name,
            type=self.type,
            priority=self.priority,
            condition=condition,
            action=action,
            active=self.active,
            metadata={'notes': self.notes} if self.notes else {},
        )


@dataclass
class ValidationResult:
    """Result of rule validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class RulesService:
    """Service for managing rule definitions."""

    CSV_COLUMNS = [
        'rule_id', 'name', 'type', 'active', 'priority', 'condition',
        'action_type', 'action_variable', 'action_value', 'notes'
    ]

    ACTION_TYPES = {a.value for a in ActionType}

    def __init__(self, rules_csv_path: Path):
        self.rules_csv_path = Path(rules_csv_path)

    def list_rules(self, include_inactive: bool = True) -> list[RuleRecord]:
        """List all rules from CSV."""
        rules = []
        if not self.rules_csv_path.exists():
            return rules

        with open(self.rules_csv_path, 'r', encoding='utf-8') as f:
            reader = csv.DictReader(f)
            for row in reader:
                if not row.get('rule_id'):
                    continue
                rule = RuleRecord.from_csv_row(row)
                if include_inactive or rule.active:
                    rules.append(rule)

        return rules

    def get_rule(self, rule_id: str) -> Optional[RuleRecord]:
        """Get a single rule by ID."""
        for rule in self.list_rules():
            if rule.rule_id == rule_id:
                return rule
        return None

    def create_rule(self, rule: RuleRecord) -> RuleRecord:
        """Create a new rule."""
        # Generate rule_id if not provided
        if not rule.rule_id:
            rule.rule_id = self._generate_rule_id(rule)

        if self.get_rule(rule.rule_id):
            raise ValueError(f"Rule with ID '{rule.rule_id}' already exists")

        rules = self.list_rules()
        rules.append(rule)
        self._write_rules(rules)
        return rule

    def update_rule(self, rule_id: str, updates: dict) -> RuleRecord:
        """Update an existing rule."""
        rules = self.list_rules()

        for i, rule in enumerate(rules):
            if rule.rule_id == rule_id:
                for key, value in updates.items():
                    if key != 'rule_id' and hasattr(rule, key):
                        setattr(rule, key, value)
                self._write_rules(rules)
                return rules[i]

        raise ValueError(f"Rule with ID '{rule_id}' not found")

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule."""
        rules = self.list_rules()
        original_count = len(rules)
        rules = [r for r in rules if r.rule_id != rule_id]

        if len(rules) == original_count:
            raise ValueError(f"Rule with ID '{rule_id}' not found")

        self._write_rules(rules)
        return True

    def validate_rule(self, rule: RuleRecord) -> ValidationResult:
        """Validate a rule before saving."""
        result = ValidationResult(valid=True)

        # Required fields
        if not rule.name:
            result.errors.append("Name is required")
            result.valid = False

        if rule.action_type not in self.ACTION_TYPES:
            result.errors.append(
                f"Unknown action type '{rule.action_type}' (expected one of {', '.join(sorted(self.ACTION_TYPES))})"
            )
            result.valid = False

        if rule.action_type == ActionType.SET_VARIABLE.value and not rule.action_variable:
            result.errors.append("Action variable is required for SET_VARIABLE")
            result.valid = False

        try:
            int(rule.priority)
        except (TypeError, ValueError):
            result.errors.append("Priority must be an integer")
            result.valid = False

        if rule.condition:
            try:
                RuleParser.parse(rule.condition)
            except RuleParseError as e:
                result.errors.append(str(e))
                result.valid = False
        else:
            result.warnings.append("Rule has no condition and will fire on every evaluation")

        if result.valid:
            result.warnings.extend(self._check_conflicts(rule))

        return result

    def _check_conflicts(self, rule: RuleRecord) -> list[str]:
        """Check for rules that might conflict with this one."""
        warnings = []

        for existing in self.list_rules():
            if existing.rule_id == rule.rule_id or not existing.active:
                continue

            same_condition = (existing.condition or '') == (rule.condition or '')
            same_target = (
                rule.action_variable is not None
                and existing.action_variable == rule.action_variable
                and existing.action_value != rule.action_value
            )

            if same_target:
                warnings.append(
                    f"Rule '{existing.rule_id}' also sets '{rule.action_variable}' "
                    f"(priority {existing.priority} vs {rule.priority})"
                )
            elif same_condition and existing.action_type == rule.action_type:
                warnings.append(f"Rule '{existing.rule_id}' has the same condition and action type")

        return warnings

    def _generate_rule_id(self, rule: RuleRecord) -> str:
        """Generate a unique rule ID."""
        base = (rule.type or 'RULE').upper()[:8]
        if rule.action_variable:
            base += f"-{rule.action_variable[:12]}"

        existing_ids = {r.rule_id for r in self.list_rules()}
        candidate = base
        counter = 1
        while candidate in existing_ids:
            candidate = f"{base}-{counter}"
            counter += 1

        return candidate

    def _write_rules(self, rules: list[RuleRecord]):
        """Write rules back to CSV."""
        self.rules_csv_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.rules_csv_path, 'w', encoding='utf-8', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self.CSV_COLUMNS)
            writer.writeheader()
            for rule in rules:
                writer.writerow(rule.to_csv_row())

    def load_into(self, target) -> list[str]:
        """
        Add every stored rule to `target` (a RuleBase or anything else with
        add_rule). Rules that fail to parse are skipped with a warning;
        returns the ids that were loaded.
        """
        loaded = []
        for record in self.list_rules():
            try:
                target.add_rule(record.to_engine_rule())
            except ValueError as e:
                logger.warning(f"Skipping rule {record.rule_id}: {e}")
                continue
            loaded.append(record.rule_id)
        return loaded

    def get_stats(self) -> dict:
        """Get statistics about rules."""
        rules = self.list_rules()

        active = [r for r in rules if r.active]
        by_type = {}
        for r in rules:
            by_type[r.type] = by_type.get(r.type, 0) + 1

        return {
            'total': len(rules),
            'active': len(active),
            'inactive': len(rules) - len(active),
            'by_type': by_type,
            'checked_at': datetime.now().isoformat(),
        }
