from monorun.config import RunOptions, load_run_options
from monorun.output import OutputMultiplexer
from monorun.plan import ExecutionPlan, Phase, Skip, Unit, build_plan
from monorun.process import SpawnError, run_unit
from monorun.report import OutputLine, RunReport, UnitResult, UnitStatus
from monorun.scheduler import Scheduler
from monorun.workspace import ConfigError, Package, discover_packages, select_packages

__all__ = [
    "ConfigError",
    "ExecutionPlan",
    "OutputLine",
    "OutputMultiplexer",
    "Package",
    "Phase",
    "RunOptions",
    "RunReport",
    "Scheduler",
    "Skip",
    "SpawnError",
    "Unit",
    "UnitResult",
    "UnitStatus",
    "build_plan",
    "discover_packages",
    "load_run_options",
    "run_unit",
    "select_packages",
]
