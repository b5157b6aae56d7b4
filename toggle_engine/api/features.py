"""
Feature toggle admin API endpoints.

Mutations made here are attributed to ADMIN_OVERRIDE.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from toggle_engine.core.errors import ErrorCode, OperationResult
from toggle_engine.core.feature_toggles import (
    EvaluationContext,
    ToggleManager,
    UpdateSource,
)

logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    ErrorCode.FEATURE_NOT_FOUND: 404,
    ErrorCode.INVALID_CONFIG: 422,
    ErrorCode.REMOTE_ERROR: 503,
    ErrorCode.REMOTE_TIMEOUT: 504,
    ErrorCode.STORAGE_ERROR: 500,
}


class FeatureEvaluationResponse(BaseModel):
    """Evaluated state of one feature"""
    key: str = Field(..., description="Feature key")
    enabled: bool = Field(..., description="Resolved state for the context")
    reason: str = Field(..., description="Gate that decided the result")
    variant: Optional[str] = Field(None, description="A/B variant controlling the feature")


class RolloutRequest(BaseModel):
    """Rollout percentage change"""
    percentage: int = Field(..., description="Target percentage; clamped to 0-100")


class OperationResponse(BaseModel):
    """Mutation outcome"""
    success: bool = Field(..., description="Whether the operation succeeded")
    key: Optional[str] = Field(None, description="Feature key")


def _raise_for(result: OperationResult) -> None:
    if result:
        return
    status = _STATUS_BY_CODE.get(result.code, 500)
    raise HTTPException(status_code=status, detail=result.to_dict())


def create_router(manager: ToggleManager) -> APIRouter:
    """Build the admin router around an explicit manager instance."""
    router = APIRouter(tags=["feature-toggles"])

    @router.get("/features")
    async def list_features() -> Dict[str, Any]:
        features = manager.get_all_features()
        return {
            "environment": manager.environment.value,
            "count": len(features),
            "features": {key: features[key].to_dict() for key in sorted(features)},
        }

    @router.get("/features/{key}")
    async def get_feature(key: str) -> Dict[str, Any]:
        config = manager.get_feature(key)
        if config is None:
            raise HTTPException(
                status_code=404,
                detail={"code": ErrorCode.FEATURE_NOT_FOUND.value, "message": f"Feature not found: {key}"},
            )
        return config.to_dict()

    @router.get("/features/{key}/evaluate", response_model=FeatureEvaluationResponse)
    async def evaluate_feature(
        key: str,
        user_id: Optional[str] = None,
        segment: Optional[str] = None,
    ) -> FeatureEvaluationResponse:
        base = manager.context
        context = EvaluationContext(
            user_id=user_id if user_id is not None else base.user_id,
            segment=segment if segment is not None else base.segment,
            environment=base.environment,
            app_version=base.app_version,
        )
        result = manager.evaluate(key, context)
        return FeatureEvaluationResponse(
            key=key,
            enabled=result.enabled,
            reason=result.reason,
            variant=result.variant,
        )

    @router.post("/features/{key}/enable", response_model=OperationResponse)
    async def enable_feature(key: str) -> OperationResponse:
        _raise_for(await manager.enable_feature(key, source=UpdateSource.ADMIN_OVERRIDE))
        return OperationResponse(success=True, key=key)

    @router.post("/features/{key}/disable", response_model=OperationResponse)
    async def disable_feature(key: str) -> OperationResponse:
        _raise_for(await manager.disable_feature(key, source=UpdateSource.ADMIN_OVERRIDE))
        return OperationResponse(success=True, key=key)

    @router.put("/features/{key}/rollout", response_model=OperationResponse)
    async def set_rollout(key: str, request: RolloutRequest) -> OperationResponse:
        _raise_for(await manager.set_feature_rollout_percentage(key, request.percentage))
        return OperationResponse(success=True, key=key)

    @router.post("/refresh", response_model=OperationResponse)
    async def refresh() -> OperationResponse:
        _raise_for(await manager.refresh_configuration())
        return OperationResponse(success=True)

    @router.get("/ab-tests")
    async def list_ab_tests() -> Dict[str, List[Dict[str, Any]]]:
        tests = manager.get_active_ab_tests()
        return {"active": [tests[test_id].to_dict() for test_id in sorted(tests)]}

    return router
