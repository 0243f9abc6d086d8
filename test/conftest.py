"""
Test configuration for Relay tests
"""

import pytest
import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from backends import ScriptedBackend
from effects import DispatcherConfig
from runner import WorkflowRunner
from utilities import to_python

WORKFLOWS_DIR = project_root / "workflows"

# no real waiting between retries in tests
FAST_CONFIG = DispatcherConfig(timeout=10.0, max_attempts=3, backoff_base=0.0)


@pytest.fixture
def make_runner():
  """Factory: make_runner(responses=None, responder=None, **runner_kwargs) -> (runner, backend)"""
  def factory(responses=None, responder=None, config=FAST_CONFIG, **kwargs):
    backend = ScriptedBackend(responses, responder)
    return WorkflowRunner(backend, config, **kwargs), backend
  return factory


@pytest.fixture
def evaluate():
  """Evaluate a standalone expression and return plain Python data"""
  runner = WorkflowRunner(ScriptedBackend(), FAST_CONFIG)

  def run(expression):
    return to_python(runner.evaluate(expression))
  return run


@pytest.fixture
def workflow_path():
  def path(name):
    return str(WORKFLOWS_DIR / f"{name}.relay")
  return path
