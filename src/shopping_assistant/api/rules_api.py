"""
Rules API - FastAPI router for rule management.

Changes are written to rules.csv and applied to the running rule base.
"""
from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from typing import Optional

from ..services.rules_service import RulesService, RuleRecord

router = APIRouter(prefix="/api/rules", tags=["rules"])


def get_rules_service(request: Request) -> RulesService:
    return request.app.state.rules_service


def _sync_engine(request: Request, record: RuleRecord):
    """Replace the live copy of the rule; a rule that fails to parse is only stored."""
    service = request.app.state.service
    try:
        rule = record.to_engine_rule()
    except ValueError:
        service.remove_rule(record.rule_id)
        return
    service.add_rule(rule)


# Pydantic models for API
class RuleCreate(BaseModel):
    """Request model for creating a rule."""
    rule_id: Optional[str] = None
    name: str
    type: str = "GENERAL"
    active: bool = True
    priority: int = 50
    condition: Optional[str] = None
    action_type: str = "SET_VARIABLE"
    action_variable: Optional[str] = None
    action_value: str = ""
    notes: Optional[str] = None


class RuleUpdate(BaseModel):
    """Request model for updating a rule."""
    name: Optional[str] = None
    type: Optional[str] = None
    active: Optional[bool] = None
    priority: Optional[int] = None
    condition: Optional[str] = None
    action_type: Optional[str] = None
    action_variable: Optional[str] = None
    action_value: Optional[str] = None
    notes: Optional[str] = None


class RuleResponse(BaseModel):
    """Response model for a rule."""
    rule_id: str
    name: str
    type: str
    active: bool
    priority: int
    condition: Optional[str]
    action_type: str
    action_variable: Optional[str]
    action_value: str
    notes: Optional[str]


class ValidationResponse(BaseModel):
    """Response model for validation."""
    valid: bool
    errors: list[str]
    warnings: list[str]


# Endpoints

@router.get("", response_model=list[RuleResponse])
async def list_rules(include_inactive: bool = True, rules_service: RulesService = Depends(get_rules_service)):
    """List all rules."""
    rules = rules_service.list_rules(include_inactive=include_inactive)
    return [RuleResponse(**rule.__dict__) for rule in rules]


@router.get("/stats")
async def get_stats(rules_service: RulesService = Depends(get_rules_service)):
    """Get rule statistics."""
    return rules_service.get_stats()


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str, rules_service: RulesService = Depends(get_rules_service)):
    """Get a single rule by ID."""
    rule = rules_service.get_rule(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail=f"Rule '{rule_id}' not found")
    return RuleResponse(**rule.__dict__)


@router.post("", response_model=RuleResponse)
async def create_rule(rule_data: RuleCreate, request: Request,
                      rules_service: RulesService = Depends(get_rules_service)):
    """Create a new rule."""
    rule = RuleRecord(**{**rule_data.model_dump(), 'rule_id': rule_data.rule_id or ''})

    # Validate first
    validation = rules_service.validate_rule(rule)
    if not validation.valid:
        raise HTTPException(status_code=400, detail={"errors": validation.errors})

    try:
        created = rules_service.create_rule(rule)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _sync_engine(request, created)
    return RuleResponse(**created.__dict__)


@router.put("/{rule_id}", response_model=RuleResponse)
async def update_rule(rule_id: str, updates: RuleUpdate, request: Request,
                      rules_service: RulesService = Depends(get_rules_service)):
    """Update an existing rule."""
    # Only fields present in the request body are applied, explicit nulls included
    update_dict = updates.model_dump(exclude_unset=True)

    existing = rules_service.get_rule(rule_id)
    if not existing:
        raise HTTPException(status_code=404, detail=f"Rule with ID '{rule_id}' not found")

    validation = rules_service.validate_rule(replace(existing, **update_dict))
    if not validation.valid:
        raise HTTPException(status_code=400, detail={"errors": validation.errors})

    try:
        updated = rules_service.update_rule(rule_id, update_dict)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _sync_engine(request, updated)
    return RuleResponse(**updated.__dict__)


@router.delete("/{rule_id}")
async def delete_rule(rule_id: str, request: Request, rules_service: RulesService = Depends(get_rules_service)):
    """Delete a rule."""
    try:
        rules_service.delete_rule(rule_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    request.app.state.service.remove_rule(rule_id)
    return {"success": True, "message": f"Rule '{rule_id}' deleted"}


@router.post("/validate", response_model=ValidationResponse)
async def validate_rule(rule_data: RuleCreate, rules_service: RulesService = Depends(get_rules_service)):
    """Validate a rule without saving."""
    rule = RuleRecord(**{**rule_data.model_dump(), 'rule_id': rule_data.rule_id or ''})
    result = rules_service.validate_rule(rule)
    return ValidationResponse(valid=result.valid, errors=result.errors, warnings=result.warnings)
