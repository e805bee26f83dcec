"""Builtins reachable from procedure bodies, and the output membrane."""
