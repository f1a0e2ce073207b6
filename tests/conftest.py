"""
Shared test configuration.

Puts src/ on sys.path so the flat modules (store, correlation_engine,
intervention_engine, ...) and the namespace packages (pipeline, analytics)
import the same way they do when the CLI runs from src/.
"""

import os
import sys

_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_src_dir = os.path.join(_project_root, "src")
_tests_dir = os.path.dirname(os.path.abspath(__file__))

if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

# tests/ itself, so test modules can `from fakes import InMemoryStore`
if _tests_dir not in sys.path:
    sys.path.insert(1, _tests_dir)
