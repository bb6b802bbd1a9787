"""Test package for Forgebox.

Making ``tests/`` a package gives test modules fully-qualified names, so
shared helpers can be imported as ``tests.conftest``.
"""
