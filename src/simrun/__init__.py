"""
simrun - Monte Carlo simulation runner.

Generate, analyse, summarise: reproducible, restartable, failure-tolerant.
"""

from simrun.checkpoint import load_artifact, sim_clean
from simrun.config import SimConfig, load_config
from simrun.orchestrator import run_simulation
from simrun.results import Condition
from simrun.seeds import load_seed

__version__ = "0.1.0"
__all__ = [
    "Condition",
    "SimConfig",
    "__version__",
    "load_artifact",
    "load_config",
    "load_seed",
    "run_simulation",
    "sim_clean",
]
