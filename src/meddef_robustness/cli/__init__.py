"""
MedDef Robustness - Command Line Interface.

Provides a rich CLI for running robustness experiments, screening
predictions for attacks, and managing configurations.

Usage:
    meddef-robustness evaluate experiment.yaml
    meddef-robustness validate config.yaml
    meddef-robustness generate --type experiment --output config.yaml
"""

from meddef_robustness.cli.main import app, main

__all__ = ["app", "main"]
