#!/usr/bin/env python3
"""
Batch pipeline for face biometric templates and morphable models.

Three steps run in a fixed order, each one skipped when its input is not
configured:

1. templates - isocurve archives to an HDF5 template archive
2. training  - textured PLY scans plus landmarks to a morphable model
3. fitting   - one scan morphed onto a trained model

Step implementations live in facebio/steps/.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# ============================================================================
# Logging
# ============================================================================

class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET_COLOR = "\033[0m"


class _ColorFormatter(logging.Formatter):
    """Colors the level name; works on a copy so file handlers stay plain."""

    def format(self, record: logging.LogRecord) -> str:
        colored = logging.makeLogRecord(record.__dict__)
        color = LEVEL_COLORS.get(record.levelname, RESET_COLOR)
        colored.levelname = f"{color}{record.levelname}{RESET_COLOR}"
        return super().format(colored)


class PipelineLogger:
    """
    Console and file logging for a pipeline run.

    Handlers are attached to the ``facebio`` logger, so messages emitted by
    library modules through ``logging.getLogger(__name__)`` end up in the
    same console and log file.
    """

    def __init__(self, name: str = "facebio", log_file: Optional[Path] = None, level: LogLevel = LogLevel.INFO):
        self.logger = logging.getLogger(name)
        self.logger.handlers.clear()
        self.logger.setLevel(level.value)
        self.log_file = log_file

        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_ColorFormatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%H:%M:%S"))
        self.logger.addHandler(console)

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file)
            handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                                                   datefmt="%Y-%m-%d %H:%M:%S"))
            self.logger.addHandler(handler)

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)

    def _step(self, marker: str, step_name: str, text: str, detail: str = ""):
        self.info(f"{marker} {step_name}{text}" + (f": {detail}" if detail else ""))

    def step_start(self, step_name: str, description: str = ""):
        self._step("▶", step_name, "", description)

    def step_success(self, step_name: str, message: str = ""):
        self._step("✓", step_name, " completed", message)

    def step_skip(self, step_name: str, reason: str = ""):
        self._step("⊘", step_name, " skipped", reason)

    def step_error(self, step_name: str, error: str):
        self.error(f"✗ {step_name} failed: {error}")

    def progress(self, current: int, total: int, item: str = "items"):
        share = 100.0 * current / total if total else 0.0
        self.info(f"{item}: {current}/{total} ({share:.0f}%)")

    def banner(self, message: str):
        rule = "=" * 60
        self.info(rule)
        self.info(message)
        self.info(rule)


def setup_logging(log_dir: Path, level: str = "INFO") -> Tuple[PipelineLogger, Path]:
    """
    Create the run logger with a timestamped log file in ``log_dir``.

    Unknown level names fall back to INFO.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"facebio_{time.strftime('%Y%m%d-%H%M%S')}.log"
    log_level = LogLevel.__members__.get(level.upper(), LogLevel.INFO)
    return PipelineLogger("facebio", log_file, log_level), log_file


# ============================================================================
# Steps
# ============================================================================

class StepStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of one step; ``data`` ends up in the run summary."""
    status: StepStatus
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is StepStatus.SUCCESS

    @property
    def skipped(self) -> bool:
        return self.status is StepStatus.SKIPPED


class PipelineStep(ABC):
    """
    A unit of pipeline work configured by a plain dict.

    Subclasses provide ``name``, ``description`` and ``execute()``. Setting
    ``skip`` in the config (optionally with ``skip_reason``) turns the step
    into a no-op.
    """

    def __init__(self, logger: PipelineLogger, config: Dict[str, Any]):
        self.logger = logger
        self.config = config

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @abstractmethod
    def execute(self) -> StepResult:
        ...

    def should_run(self) -> bool:
        return not self.config.get("skip", False)

    def run(self) -> StepResult:
        """Execute the step; an escaping exception becomes a FAILED result."""
        if not self.should_run():
            reason = self.config.get("skip_reason", "configured to skip")
            self.logger.step_skip(self.name, reason)
            return StepResult(StepStatus.SKIPPED, reason)

        self.logger.step_start(self.name, self.description)
        try:
            result = self.execute()
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            self.logger.step_error(self.name, error)
            return StepResult(StepStatus.FAILED, "unhandled exception", error=error)

        if result.success:
            self.logger.step_success(self.name, result.message)
        elif result.skipped:
            self.logger.step_skip(self.name, result.message)
        else:
            self.logger.step_error(self.name, result.error or result.message)
        return result


# ============================================================================
# Orchestrator
# ============================================================================

class PipelineOrchestrator:
    """
    Runs the templates, training and fitting steps in order.

    Each step gets its own config section with output directories defaulted
    under ``output_root``. A step without its input is skipped; a failed
    step ends the run. The model trained in this run is handed to the
    fitting step unless ``fitting.model_path`` is set.
    """

    # (config section, required input, output key, default output directory, skip reason)
    SECTIONS = [
        ("templates", "isocurve_dir", "output_dir", "templates", "no isocurve directory given"),
        ("training", "mesh_dir", "model_dir", "model", "no training mesh directory given"),
        ("fitting", "input_mesh", "output_dir", "fitting", "no input mesh given"),
    ]

    def __init__(self, logger: PipelineLogger, config: Dict[str, Any]):
        self.logger = logger
        self.config = config
        self.output_root = Path(config["output_root"])
        self.state: Dict[str, Any] = {}
        self.results: List[Dict[str, Any]] = []

    def _section(self, name: str, required: str, output_key: str, output_name: str,
                 skip_reason: str) -> Dict[str, Any]:
        section = dict(self.config.get(name, {}))
        section.setdefault(output_key, self.output_root / output_name)
        if name == "fitting" and not section.get("model_path") and self.state.get("model_path"):
            section["model_path"] = self.state["model_path"]
        if not section.get(required):
            section.setdefault("skip", True)
            section.setdefault("skip_reason", skip_reason)
        return section

    def run(self) -> Dict[str, Any]:
        """Run every step and return (and save) the run summary."""
        from .steps import ModelFittingStep, ModelTrainingStep, TemplateExtractionStep

        step_classes = {
            "templates": TemplateExtractionStep,
            "training": ModelTrainingStep,
            "fitting": ModelFittingStep,
        }

        start_time = time.time()
        self.logger.banner("Starting pipeline")

        for name, *rest in self.SECTIONS:
            step = step_classes[name](self.logger, self._section(name, *rest))
            result = step.run()
            self._record_result(name, result)
            if result.success and "model_path" in result.data:
                self.state["model_path"] = result.data["model_path"]
            if not result.success and not result.skipped:
                return self._finish(start_time, success=False)

        return self._finish(start_time, success=True)

    def _record_result(self, step_name: str, result: StepResult):
        self.results.append({
            "step": step_name,
            "status": result.status.value,
            "message": result.message,
            "data": result.data,
            "error": result.error,
        })

    def _finish(self, start_time: float, success: bool) -> Dict[str, Any]:
        finished = time.time()
        summary = {
            "success": success,
            "started_at": start_time,
            "finished_at": finished,
            "elapsed_seconds": finished - start_time,
            "steps": self.results,
            "log_file": str(self.logger.log_file) if self.logger.log_file else None,
        }
        summary_path = self.output_root / "logs" / "pipeline_summary.json"
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        with open(summary_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, default=str)
        self.logger.info(f"Run summary written to {summary_path}")
        return summary


# ============================================================================
# CLI Entry Point
# ============================================================================

DEFAULT_OUTPUT_ROOT = Path("outputs")
DEFAULT_TRAINING_ITERATIONS = 5
DEFAULT_FITTING_ITERATIONS = 10


def build_arg_parser() -> argparse.ArgumentParser:
    """Build command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="facebio",
        description="Isocurve templates, morphable face model training and fitting.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Coordinate templates from every 2nd curve, curves 0..9
  facebio --isocurves data/isocurves --select 0 10 --curve-modulo 2

  # Train a model from PLY scans with landmark files next to them
  facebio --train-meshes data/train --training-iterations 5

  # Fit a scan to a trained model
  facebio --fit-mesh scan.ply --fit-landmarks scan.json --model outputs/model/model.h5

  # Everything from a JSON config (command-line flags win)
  facebio --config run.json
        """
    )

    parser.add_argument("--config", type=Path, default=None,
                        help="JSON file with 'templates', 'training' and 'fitting' sections")
    parser.add_argument("--output-root", type=Path, default=None,
                        help=f"Root output directory (default: {DEFAULT_OUTPUT_ROOT})")
    parser.add_argument("--log-level", type=str, default=None,
                        help="DEBUG, INFO, WARNING, ERROR or CRITICAL (default: INFO)")

    # Templates
    parser.add_argument("--isocurves", type=Path, default=None,
                        help="Directory of isocurve archives named <subject id>_<anything>")
    parser.add_argument("--separator", type=str, default=None,
                        help="Subject id separator in file names (default: _)")
    parser.add_argument("--filter", dest="file_filter", type=str, default=None,
                        help="Glob selecting isocurve archives (default: *)")
    parser.add_argument("--curve-modulo", type=int, default=None,
                        help="Keep every n-th isocurve (default: 1)")
    parser.add_argument("--point-modulo", type=int, default=None,
                        help="Keep every n-th point of each isocurve (default: 1)")
    parser.add_argument("--select", type=int, nargs=2, metavar=("START", "END"), default=None,
                        help="Keep isocurves START..END-1")
    parser.add_argument("--mode", choices=["coordinates", "distance"], default=None,
                        help="Template type (default: coordinates)")

    # Training
    parser.add_argument("--train-meshes", type=Path, default=None,
                        help="Directory of textured PLY training scans")
    parser.add_argument("--train-landmarks", type=Path, default=None,
                        help="Directory of landmark files matching the scans (default: mesh directory)")
    parser.add_argument("--mask", type=Path, default=None,
                        help="Grid archive restricting the modelled cells (default: whole layout)")
    parser.add_argument("--training-iterations", type=int, default=None,
                        help=f"Procrustes rounds (default: {DEFAULT_TRAINING_ITERATIONS})")
    parser.add_argument("--scale", action="store_true",
                        help="Allow uniform scaling during alignment")

    # Fitting
    parser.add_argument("--fit-mesh", type=Path, default=None,
                        help="PLY scan to fit")
    parser.add_argument("--fit-landmarks", type=Path, default=None,
                        help="Landmark file of the scan to fit")
    parser.add_argument("--model", type=Path, default=None,
                        help="Model archive (default: the model trained in this run)")
    parser.add_argument("--fit-iterations", type=int, default=None,
                        help=f"Nearest-neighbour refinement rounds (default: {DEFAULT_FITTING_ITERATIONS})")

    return parser


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read a JSON config file; its top level must be an object."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: config must be a JSON object")
    return data


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    """Defaults, then the --config file, then explicit command-line flags."""
    config: Dict[str, Any] = {
        "output_root": DEFAULT_OUTPUT_ROOT,
        "log_level": "INFO",
        "templates": {
            "separator": "_",
            "file_filter": "*",
            "curve_modulo": 1,
            "point_modulo": 1,
            "mode": "coordinates",
        },
        "training": {
            "iterations": DEFAULT_TRAINING_ITERATIONS,
            "scale": False,
        },
        "fitting": {
            "iterations": DEFAULT_FITTING_ITERATIONS,
            "scale": False,
        },
    }

    if args.config is not None:
        config = _merge(config, load_config_file(args.config))

    flags = {
        "output_root": args.output_root,
        "log_level": args.log_level,
        "templates": {
            "isocurve_dir": args.isocurves,
            "separator": args.separator,
            "file_filter": args.file_filter,
            "curve_modulo": args.curve_modulo,
            "point_modulo": args.point_modulo,
            "select_range": args.select,
            "mode": args.mode,
        },
        "training": {
            "mesh_dir": args.train_meshes,
            "landmarks_dir": args.train_landmarks,
            "mask": args.mask,
            "iterations": args.training_iterations,
            "scale": args.scale or None,
        },
        "fitting": {
            "input_mesh": args.fit_mesh,
            "input_landmarks": args.fit_landmarks,
            "model_path": args.model,
            "iterations": args.fit_iterations,
            "scale": args.scale or None,
        },
    }
    for key, value in flags.items():
        if isinstance(value, dict):
            config[key] = _merge(config[key], {k: v for k, v in value.items() if v is not None})
        elif value is not None:
            config[key] = value

    config["output_root"] = Path(config["output_root"])
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point; returns the process exit code."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        parser.error(f"cannot read config: {exc}")

    logger, log_file = setup_logging(config["output_root"] / "logs", config["log_level"])
    logger.banner("Face biometrics pipeline")
    logger.info(f"Log file: {log_file}")
    logger.info(f"Output root: {config['output_root']}")

    try:
        summary = PipelineOrchestrator(logger, config).run()
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except Exception as exc:
        logger.error(f"Pipeline crashed: {exc}\n{traceback.format_exc()}")
        return 1

    if not summary["success"]:
        logger.error("Pipeline failed, see the run summary for the failing step")
        return 1
    logger.banner(f"Pipeline finished in {summary['elapsed_seconds']:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
