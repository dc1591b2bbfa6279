"""
MedDef Robustness API Module

FastAPI-based REST API for adversarial robustness testing.
"""

from meddef_robustness.api.main import app

__all__ = ["app"]
