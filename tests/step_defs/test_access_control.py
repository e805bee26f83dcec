"""
Step definitions for the Access modifiers feature.

These tests verify that:
- owner procedures run only for the schema owner, at any depth
- private procedures are reachable only from inside their schema
- view procedures run read-only
- arguments are checked against declared parameter types

Every step used here is shared through conftest.py.
"""
from pytest_bdd import scenarios

# Load scenarios from feature file
scenarios("../features/access_control.feature")
