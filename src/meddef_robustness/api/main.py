"""
MedDef Robustness - Main API Application

FastAPI application providing REST endpoints for:
- Adversarial example generation (FGSM, PGD, medical attention)
- Attention (saliency) map extraction
- Statistical attack detection
- Robustness sweeps over attack configurations

The resident model is loaded at startup from MEDDEF_MODEL_PATH and
MEDDEF_DATASET. Images travel as nested [height][width][channels] lists.

OpenAPI documentation available at /docs (Swagger UI) and /redoc (ReDoc).
"""

import functools
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import numpy as np
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from meddef_robustness import __version__
from meddef_robustness.adversarial.attention import AttentionMap
from meddef_robustness.assets import Asset
from meddef_robustness.datasets import DATASET_SPECS, DatasetType
from meddef_robustness.exceptions import (
    AssetMismatchError,
    AttentionMapShapeMismatchError,
    GradientUnavailableError,
    InvalidAttackConfigError,
    InvalidShapeError,
    MedDefError,
    ModelNotLoadedError,
)
from meddef_robustness.models import KerasModel, ModelContext
from meddef_robustness.service import RobustnessService

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[MedDefError], int] = {
    ModelNotLoadedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    GradientUnavailableError: status.HTTP_501_NOT_IMPLEMENTED,
    InvalidAttackConfigError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidShapeError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AttentionMapShapeMismatchError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AssetMismatchError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


# =============================================================================
# Pydantic Models for API
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status", examples=["healthy"])
    version: str = Field(..., description="API version", examples=["1.0.0"])
    timestamp: str = Field(..., description="Current timestamp in ISO format")
    model_loaded: bool = Field(..., description="Whether a model is resident")
    dataset: str | None = Field(default=None, description="Dataset of the resident model")


class AttentionMapPayload(BaseModel):
    """Attention map as sent by clients."""

    values: list[list[float]] = Field(..., description="Attention grid [height][width]")
    scale: float = Field(default=1.0, description="Prediction confidence of the map")

    def to_attention_map(self) -> AttentionMap:
        values = np.asarray(self.values, dtype=np.float64)
        if values.ndim != 2:
            raise InvalidShapeError(f"Attention values must be 2-D, got shape {values.shape}")
        return AttentionMap(
            values=values,
            width=values.shape[1],
            height=values.shape[0],
            scale=self.scale,
        )


class GenerateRequest(BaseModel):
    """Request model for adversarial example generation."""

    attack_type: str = Field(
        default="fgsm",
        description="Attack method",
        examples=["fgsm", "pgd", "medical_attention"],
    )
    config: dict[str, Any] = Field(
        ...,
        description="Attack configuration",
        examples=[{"epsilon": 0.05, "iterations": 10}],
    )
    image: list[list[list[float]]] = Field(..., description="Image [height][width][channels]")
    true_label: int | str = Field(..., description="True class index or label name")
    attention_map: AttentionMapPayload | None = Field(
        default=None, description="Attention map for the medical attention attack"
    )
    include_image: bool = Field(
        default=False, description="Return the adversarial image in the response"
    )


class AttentionRequest(BaseModel):
    """Request model for attention map extraction."""

    image: list[list[list[float]]] = Field(..., description="Image [height][width][channels]")
    target_class: int | None = Field(default=None, description="Class to explain", ge=0)


class DetectionRequest(BaseModel):
    """Request model for attack detection."""

    image: list[list[list[float]]] | None = Field(
        default=None, description="Image [height][width][channels]"
    )
    prediction: list[float] | None = Field(
        default=None, description="Precomputed prediction probabilities"
    )


class AttackSpecPayload(BaseModel):
    """One sweep entry."""

    type: str = Field(..., description="Attack method", examples=["fgsm"])
    config: dict[str, Any] = Field(..., description="Attack configuration")


class EvaluationRequest(BaseModel):
    """Request model for a robustness sweep."""

    image: list[list[list[float]]] = Field(..., description="Clean image [height][width][channels]")
    true_label: int | str = Field(..., description="True class index or label name")
    dataset: DatasetType | None = Field(
        default=None, description="Dataset of the image (default: model dataset)"
    )
    path: str = Field(default="", description="Identifier reported with the results")
    attacks: list[AttackSpecPayload] = Field(..., description="Attack configurations", min_length=1)


# =============================================================================
# Application Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle manager."""
    # Startup
    logger.info("Starting MedDef Robustness API...")
    context = ModelContext()

    model_path = os.getenv("MEDDEF_MODEL_PATH")
    dataset = os.getenv("MEDDEF_DATASET")
    if model_path and dataset:
        context.load(functools.partial(KerasModel.load, model_path), dataset)
        logger.info(f"Loaded {dataset} model from {model_path}")
    else:
        logger.warning("MEDDEF_MODEL_PATH/MEDDEF_DATASET not set - no model loaded")

    app.state.service = RobustnessService(context)

    yield

    # Shutdown
    logger.info("Shutting down MedDef Robustness API...")
    context.unload()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="MedDef Robustness API",
    description="""
## Adversarial Robustness Testing for Medical Imaging AI

Evaluates retinal OCT and chest X-ray classifiers under adversarial manipulation.

### Features

- **Attacks**: FGSM and medical attention attacks with anatomical region protection, PGD
- **Attention maps**: Gradient saliency of the resident model
- **Detection**: Lightweight statistical detection from prediction probabilities
- **Robustness**: Sweeps over attack configurations with per-attack scores
    """,
    version=__version__,
    openapi_tags=[
        {"name": "Health", "description": "Service health endpoints"},
        {"name": "Attacks", "description": "Adversarial example generation"},
        {"name": "Attention", "description": "Attention map extraction"},
        {"name": "Detection", "description": "Attack detection"},
        {"name": "Robustness", "description": "Robustness evaluation"},
    ],
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> RobustnessService:
    """Robustness service bound to the application's model context."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return service


@app.exception_handler(MedDefError)
async def meddef_error_handler(request: Request, exc: MedDefError) -> JSONResponse:
    """Translate robustness errors into HTTP responses."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    logger.warning(f"{request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def _image(data: list[list[list[float]]]) -> np.ndarray:
    try:
        return np.asarray(data, dtype=np.float64)
    except ValueError as e:
        raise InvalidShapeError(f"Image rows and channels must be rectangular: {e}") from e


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
    description="Returns service health status, version and model residency.",
)
async def health_check(service: RobustnessService = Depends(get_service)) -> HealthResponse:
    """Check if the service is healthy."""
    dataset = service.context.dataset
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        model_loaded=service.context.is_loaded,
        dataset=dataset.value if dataset else None,
    )


# =============================================================================
# Robustness Endpoints
# =============================================================================


@app.post(
    "/api/v1/attacks/generate",
    tags=["Attacks"],
    summary="Generate adversarial example",
    description="""
Generates an adversarial example for one image with the resident model.

Supported attack methods:
- **fgsm**: Fast Gradient Sign Method with region protection
- **pgd**: Projected Gradient Descent
- **medical_attention**: FGSM weighted by an attention map
    """,
)
async def generate_adversarial(
    request: GenerateRequest,
    service: RobustnessService = Depends(get_service),
) -> dict[str, Any]:
    """Generate an adversarial example."""
    attention_map = request.attention_map.to_attention_map() if request.attention_map else None
    result = service.generate_adversarial_example(
        request.attack_type,
        request.config,
        _image(request.image),
        request.true_label,
        attention_map=attention_map,
    )
    return result.to_dict(include_arrays=request.include_image)


@app.post(
    "/api/v1/attention/extract",
    tags=["Attention"],
    summary="Extract attention map",
)
async def extract_attention(
    request: AttentionRequest,
    service: RobustnessService = Depends(get_service),
) -> dict[str, Any]:
    """Extract the attention map of the resident model."""
    attention = service.extract_attention_map(_image(request.image), request.target_class)
    return attention.to_dict()


@app.post(
    "/api/v1/detection/detect",
    tags=["Detection"],
    summary="Detect adversarial input",
    description="Statistical detection from the prediction probabilities of an image.",
)
async def detect_attack(
    request: DetectionRequest,
    service: RobustnessService = Depends(get_service),
) -> dict[str, Any]:
    """Screen an image or prediction vector for adversarial manipulation."""
    if request.image is None and request.prediction is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Either image or prediction is required",
        )
    image = _image(request.image) if request.image is not None else None
    prediction = np.asarray(request.prediction) if request.prediction is not None else None
    return service.detect_attack(image, prediction).to_dict()


@app.post(
    "/api/v1/robustness/evaluate",
    tags=["Robustness"],
    summary="Run robustness sweep",
    description="Sweeps a clean image through the given attack configurations.",
)
async def evaluate_robustness(
    request: EvaluationRequest,
    service: RobustnessService = Depends(get_service),
) -> dict[str, Any]:
    """Run a robustness evaluation on one clean image."""
    _, model_dataset = service.context.require()
    dataset = request.dataset or model_dataset

    try:
        label = request.true_label
        if isinstance(label, str):
            label = DATASET_SPECS[dataset].label_index(label)
        asset = Asset(
            image=_image(request.image),
            true_label=label,
            dataset=dataset,
            path=request.path,
        )
    except InvalidShapeError:
        raise
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    report = await service.run_robustness_evaluation(
        asset,
        [spec.model_dump() for spec in request.attacks],
    )
    return report.to_dict()


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Run the API server."""
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")  # nosec B104 - container deployment
    workers = int(os.getenv("WORKERS", "1"))

    uvicorn.run(
        "meddef_robustness.api.main:app",
        host=host,
        port=port,
        workers=workers,
        reload=os.getenv("ENVIRONMENT") == "development",
    )


if __name__ == "__main__":
    main()
