"""
plan-guard - Manifest/tracker reconciliation and quality gates for feature plans.

Run from a project directory to drive a decomposed plan feature by feature,
keep the local manifest and the Beads tracker consistent, and block session
completion until quality gates pass.
"""

__version__ = "0.2.0"
__all__ = ["__version__"]
