"""
Command line interface for MedDef Robustness.

Provides a rich command-line interface with:
- Progress bars for robustness sweeps
- Colored output for status and errors
- Interactive configuration wizard
- Statistical attack screening of prediction vectors

Usage:
    meddef-robustness evaluate experiment.yaml
    meddef-robustness detect 0.52,0.48 --dataset chest_xray
    meddef-robustness validate config.yaml
    meddef-robustness generate --type experiment
    meddef-robustness info
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from meddef_robustness import __version__
from meddef_robustness.adversarial.detection import StatisticalAttackDetector
from meddef_robustness.adversarial.evaluator import RobustnessReport
from meddef_robustness.assets import NpzAssetProvider
from meddef_robustness.config import (
    ConfigLoader,
    ExperimentConfig,
    load_experiment_config,
)
from meddef_robustness.config.loader import ConfigError
from meddef_robustness.datasets import ATTACK_LEVELS, DATASET_SPECS, resolve_dataset
from meddef_robustness.exceptions import MedDefError
from meddef_robustness.models import KerasModel, ModelContext
from meddef_robustness.service import RobustnessService

logger = logging.getLogger(__name__)

# Initialize Rich console
console = Console()

# Create Typer app
app = typer.Typer(
    name="meddef-robustness",
    help="MedDef Robustness - Adversarial Robustness Testing for Medical Imaging AI",
    add_completion=True,
    rich_markup_mode="rich",
)

CONFIG_TYPES = ("experiment", "attack", "detection")


# =============================================================================
# Utility Functions
# =============================================================================


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Configure logging with Rich handler."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=verbose,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
    )


def create_progress() -> Progress:
    """Create a Rich progress bar with standard columns."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
    )


def print_header() -> None:
    """Print the CLI header banner."""
    header = Text()
    header.append("MedDef Robustness", style="bold blue")
    header.append(" v", style="dim")
    header.append(__version__, style="cyan")

    console.print(
        Panel(
            header,
            subtitle="Adversarial Robustness Testing for Medical Imaging AI",
            border_style="blue",
        )
    )


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green][+][/green] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red][-][/red] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow][!][/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue][*][/blue] {message}")


def load_model(path: str | Path) -> Any:
    """Load the classifier named in an experiment."""
    return KerasModel.load(path)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def evaluate(
    config_path: Path = typer.Argument(
        ...,
        help="Path to experiment configuration YAML file",
        exists=True,
        readable=True,
    ),
    output_dir: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Override output directory from config",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Validate config and show what would be executed",
    ),
    batch: bool = typer.Option(
        False,
        "--batch",
        "-b",
        help="Also run a batch detection test over all assets",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output",
    ),
    log_file: Path | None = typer.Option(
        None,
        "--log-file",
        "-l",
        help="Path to log file",
    ),
) -> None:
    """
    Run a robustness evaluation experiment.

    Sweeps every clean asset through the configured attacks and saves
    one JSON report per asset.
    """
    print_header()
    setup_logging(verbose, log_file)

    try:
        with console.status("[bold blue]Loading configuration..."):
            config = load_experiment_config(config_path)

        print_success(f"Loaded configuration: {config.name}")

        if output_dir:
            config.output.output_dir = str(output_dir)

        _display_experiment_summary(config)

        if dry_run:
            print_info("Dry run mode - no attacks will be executed")
            return

        if not config.model_path:
            print_error("Experiment does not define a model_path")
            raise typer.Exit(1)
        if not config.assets:
            print_error("Experiment does not define any assets")
            raise typer.Exit(1)

        _execute_experiment(config, batch)

    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        raise typer.Exit(1) from e
    except MedDefError as e:
        print_error(f"Evaluation error: {e}")
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        print_warning("Evaluation interrupted by user")
        raise typer.Abort() from None
    except typer.Exit:
        raise
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        if verbose:
            console.print_exception()
        raise typer.Exit(1) from e


@app.command()
def detect(
    probabilities: str = typer.Argument(
        ...,
        help="Comma-separated prediction probabilities, e.g. 0.52,0.48",
    ),
    dataset: str = typer.Option(
        "chest_xray",
        "--dataset",
        "-d",
        help="Dataset profile: roct, chest_xray",
    ),
    threshold: float | None = typer.Option(
        None,
        "--threshold",
        "-t",
        help="Override the dataset attack score threshold",
    ),
) -> None:
    """
    Screen a prediction vector for adversarial manipulation.

    Uses the lightweight statistical detector (entropy and uncertainty of
    the prediction); no model is needed.
    """
    try:
        values = np.array([float(v) for v in probabilities.split(",") if v.strip()])
    except ValueError as e:
        print_error(f"Invalid probability vector: {probabilities}")
        raise typer.Exit(1) from e

    resolved = resolve_dataset(dataset)
    if resolved is None:
        print_warning(f"Unknown dataset '{dataset}', using the default threshold")

    detector = StatisticalAttackDetector(resolved)
    if threshold is not None:
        detector.threshold = threshold

    result = detector.detect(values)

    table = Table(title="Attack Detection", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    verdict = "[red]ATTACK[/red]" if result.is_attack else "[green]CLEAN[/green]"
    table.add_row("Verdict", verdict)
    table.add_row("Attack score", f"{result.confidence:.3f}")
    table.add_row("Threshold", f"{result.threshold:.2f}")
    table.add_row("Method", result.method.value)
    for key, value in result.anomaly_indicators.to_dict().items():
        table.add_row(f"  {key}", f"{value:.3f}")

    console.print(table)
    console.print(result.explanation)


@app.command()
def validate(
    config_path: Path = typer.Argument(
        ...,
        help="Path to configuration YAML file",
        exists=True,
        readable=True,
    ),
    config_type: str = typer.Option(
        "experiment",
        "--type",
        "-t",
        help="Configuration type: experiment, attack, detection",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed validation output",
    ),
) -> None:
    """
    Validate a configuration file.

    Checks the configuration file for syntax errors and validates
    all fields against the schema.
    """
    print_header()

    if config_type not in CONFIG_TYPES:
        print_error(f"Unknown configuration type: {config_type}")
        raise typer.Exit(1)

    loader = ConfigLoader()

    try:
        with console.status(f"[bold blue]Validating {config_type} configuration..."):
            if config_type == "experiment":
                config = loader.load_experiment(config_path)
            elif config_type == "attack":
                config = loader.load_attack(config_path)
            else:
                config = loader.load_detection(config_path)

        name = getattr(config, "name", config_path.name)
        print_success(f"Configuration is valid: {name}")

        if verbose:
            _display_config_details(config, config_type)

    except ConfigError as e:
        print_error(f"Validation failed: {e}")
        raise typer.Exit(1) from e


@app.command()
def generate(
    config_type: str = typer.Option(
        "experiment",
        "--type",
        "-t",
        help="Configuration type to generate: experiment, attack, detection",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file path (default: stdout)",
    ),
    interactive: bool = typer.Option(
        False,
        "--interactive",
        "-i",
        help="Use interactive wizard to create an experiment configuration",
    ),
) -> None:
    """
    Generate a configuration template.

    Creates a template configuration file that can be customized
    for your specific experiment.
    """
    print_header()

    if interactive:
        if config_type != "experiment":
            print_error("The interactive wizard only supports experiment configurations")
            raise typer.Exit(1)
        config_content = _experiment_wizard()
    else:
        loader = ConfigLoader()
        if config_type == "experiment":
            config_content = loader.generate_experiment_template()
        elif config_type == "attack":
            config_content = loader.generate_attack_template()
        elif config_type == "detection":
            config_content = loader.generate_detection_template()
        else:
            print_error(f"Unknown configuration type: {config_type}")
            raise typer.Exit(1)

    if output:
        output.write_text(config_content, encoding="utf-8")
        print_success(f"Configuration template written to: {output}")
    else:
        console.print(Panel(config_content, title=f"{config_type.title()} Template"))


@app.command()
def info() -> None:
    """
    Display framework information.

    Shows version, supported datasets, installed components and features.
    """
    print_header()

    table = Table(title="System Information", show_header=True)
    table.add_column("Component", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", sys.version.split()[0])
    table.add_row("Platform", sys.platform)
    table.add_row("Time", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))

    optional_deps = _check_optional_dependencies()
    for dep, available in optional_deps.items():
        status = "[green]Available[/green]" if available else "[dim]Not installed[/dim]"
        table.add_row(f"  {dep}", status)

    console.print(table)

    datasets_table = Table(title="Datasets", show_header=True)
    datasets_table.add_column("Dataset", style="cyan")
    datasets_table.add_column("Labels", style="white")
    datasets_table.add_column("Input size", style="green")
    for spec in DATASET_SPECS.values():
        datasets_table.add_row(
            spec.dataset.value,
            ", ".join(spec.labels),
            f"{spec.input_size[0]}x{spec.input_size[1]}",
        )
    console.print(datasets_table)

    tree = Tree("[bold blue]Available Features")

    attacks = tree.add("[cyan]Attacks")
    attacks.add("FGSM (Fast Gradient Sign Method) with region protection")
    attacks.add("PGD (Projected Gradient Descent)")
    attacks.add("Medical attention (attention-weighted FGSM)")
    levels = ", ".join(f"{name}: {list(eps)}" for name, eps in ATTACK_LEVELS.items())
    attacks.add(f"[dim]Standard levels: {levels}")

    detection = tree.add("[cyan]Detection")
    detection.add("Statistical (prediction entropy and uncertainty)")
    detection.add("Attention difference (attention shift and perturbation size)")

    analysis = tree.add("[cyan]Analysis")
    analysis.add("Attention (saliency) maps")
    analysis.add("Robustness sweeps and reports")
    analysis.add("Batch detection tests")

    console.print(tree)


@app.command()
def version() -> None:
    """Display version information."""
    console.print(f"meddef-robustness version [bold cyan]{__version__}[/bold cyan]")


# =============================================================================
# Helper Functions
# =============================================================================


def _display_experiment_summary(config: ExperimentConfig) -> None:
    """Display experiment configuration summary."""
    console.print()

    table = Table(title="Experiment Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Name", config.name)
    table.add_row("Description", config.description or "N/A")
    table.add_row("Dataset", config.dataset.value)
    table.add_row("Model", config.model_path or "N/A")
    table.add_row("Assets", str(len(config.assets)))
    table.add_row("Attacks", str(len(config.attacks)))
    table.add_row("Item delay", f"{config.item_delay:.2f}s")
    table.add_row("Output Directory", config.output.output_dir)

    console.print(table)

    attacks_table = Table(title="Attacks", show_header=True)
    attacks_table.add_column("Label", style="yellow")
    attacks_table.add_column("Type", style="cyan")
    attacks_table.add_column("Epsilon", style="green")
    attacks_table.add_column("Iterations", style="blue")

    for spec in config.attacks:
        attacks_table.add_row(
            spec.label,
            spec.type.value,
            f"{spec.config.epsilon:.3f}",
            str(spec.config.iterations),
        )

    console.print(attacks_table)
    console.print()


def _display_config_details(config: Any, config_type: str) -> None:
    """Display detailed configuration information."""
    console.print()

    table = Table(title=f"{config_type.title()} Configuration Details")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    data = config.model_dump(mode="json")
    for key, value in data.items():
        if isinstance(value, list):
            table.add_row(key, f"[{len(value)} items]")
        else:
            table.add_row(key, str(value))

    console.print(table)


def _display_report(report: RobustnessReport) -> None:
    """Display the per-attack results of one robustness report."""
    table = Table(title=f"Robustness: {Path(report.asset_path).name}", show_header=True)
    table.add_column("Attack", style="yellow")
    table.add_column("Score", style="green")
    table.add_column("Success", style="red")
    table.add_column("Confidence drop", style="cyan")
    table.add_column("L2", style="blue")
    table.add_column("Detected", style="magenta")

    for result in report.results:
        table.add_row(
            result.label,
            f"{result.robustness_score:.3f}",
            "Yes" if result.attack_result.attack_success else "No",
            f"{result.attack_result.confidence_drop_pct:.1f}%",
            f"{result.attack_result.perturbation_magnitude:.4f}",
            "Yes" if result.attack_detected else "No",
        )

    console.print(table)
    console.print(
        f"Overall robustness: [bold]{report.overall_robustness:.3f}[/bold]  "
        f"Weakest against: [red]{report.weakest_attack or 'N/A'}[/red]  "
        f"Strongest against: [green]{report.strongest_defense or 'N/A'}[/green]"
    )
    for failure in report.failures:
        print_warning(f"{failure['label']} failed: {failure['error']}")


def _execute_experiment(config: ExperimentConfig, batch: bool = False) -> None:
    """
    Execute an experiment with progress tracking.

    Each asset is loaded and swept on its own; a failing asset is logged,
    reported and skipped. Exits with code 1 only when every asset fails.
    """
    console.print()

    context = ModelContext()
    with console.status("[bold blue]Loading model..."):
        context.load(functools.partial(load_model, config.model_path), config.dataset)
    service = RobustnessService.from_experiment(context, config)
    provider = NpzAssetProvider()
    output_dir = Path(config.output.output_dir)

    print_info("Starting robustness evaluation...")

    reports: list[RobustnessReport] = []
    assets = []
    failures: list[tuple[str, str]] = []
    try:
        with create_progress() as progress:
            task = progress.add_task("[bold]Evaluating assets...", total=len(config.assets))

            for path in config.assets:
                progress.update(task, description=f"[bold]Evaluating {Path(path).name}...")
                try:
                    asset = provider.load(path)
                    report = asyncio.run(service.run_robustness_evaluation(asset, config.attacks))
                except Exception as e:
                    logger.error(f"Asset {path} failed: {e}")
                    failures.append((str(path), str(e)))
                    progress.advance(task)
                    continue

                assets.append(asset)
                reports.append(report)
                if config.output.save_report:
                    report.save(output_dir / f"{Path(path).stem}_robustness.json")
                progress.advance(task)

        console.print()
        for report in reports:
            _display_report(report)

        summary = Table(title="Assets")
        summary.add_column("Asset", style="cyan")
        summary.add_column("Status")
        for report in reports:
            summary.add_row(Path(report.asset_path).name, "[green]OK[/green]")
        for path, error in failures:
            summary.add_row(Path(path).name, f"[red]FAILED[/red] {error}")
        console.print(summary)
        console.print(f"Succeeded: {len(reports)}  Failed: {len(failures)}")

        if batch and assets:
            batch_result = asyncio.run(service.run_batch_test(assets))
            batch_table = Table(title="Batch Test")
            batch_table.add_column("Metric", style="cyan")
            batch_table.add_column("Value", style="green")
            batch_table.add_row(
                "Successful",
                f"{batch_result.successful_tests}/{batch_result.total_tests}",
            )
            batch_table.add_row("Average confidence", f"{batch_result.average_confidence:.1%}")
            batch_table.add_row(
                "Attack detection rate", f"{batch_result.attack_detection_rate:.1%}"
            )
            console.print(batch_table)
    finally:
        context.unload()

    if not reports:
        print_error(f"All {len(failures)} assets failed")
        raise typer.Exit(1)

    if failures:
        print_warning(f"Robustness evaluation completed with {len(failures)} failed assets")
    else:
        print_success("Robustness evaluation completed")
    if config.output.save_report:
        print_info(f"Reports saved to: {output_dir}")


def _experiment_wizard() -> str:
    """Interactive wizard for experiment configuration."""
    name = Prompt.ask("Experiment name", default="robustness_evaluation")
    description = Prompt.ask("Description", default="Evaluate model robustness")
    dataset = Prompt.ask("Dataset (roct/chest_xray)", default="chest_xray")
    model_path = Prompt.ask("Model path", default=f"models/meddef_{dataset}.keras")
    output_dir = Prompt.ask("Output directory", default="./results")

    attacks = []
    for attack_type in ("fgsm", "pgd"):
        if Confirm.ask(f"Add {attack_type.upper()} attacks?", default=True):
            for epsilon in ATTACK_LEVELS[attack_type]:
                attacks.append(
                    f"""  - type: "{attack_type}"
    config:
      epsilon: {epsilon}"""
                )

    if Confirm.ask("Add medical attention attack?", default=False):
        attacks.append(
            """  - type: "medical_attention"
    config:
      epsilon: 0.05"""
        )

    attacks_yaml = "\n".join(attacks) if attacks else "  []"

    return f"""# Generated Experiment Configuration
name: "{name}"
description: "{description}"
version: "1.0.0"

dataset: "{dataset}"
model_path: "{model_path}"
assets: []

attacks:
{attacks_yaml}

item_delay: 0.1

output:
  output_dir: "{output_dir}"
  save_report: true
  log_level: "INFO"
"""


def _check_optional_dependencies() -> dict[str, bool]:
    """Check availability of optional dependencies."""
    import importlib.util

    deps = {
        "TensorFlow": importlib.util.find_spec("tensorflow") is not None,
        "NumPy": importlib.util.find_spec("numpy") is not None,
        "FastAPI": importlib.util.find_spec("fastapi") is not None,
        "Uvicorn": importlib.util.find_spec("uvicorn") is not None,
    }

    return deps


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
