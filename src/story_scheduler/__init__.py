"""
story-scheduler: dependency-aware priority scheduling for story batches.

Stories are peeled into dependency levels, ranked by a multi-factor priority
score, admitted against rolling token budgets, and pushed through a fixed
stage pipeline with classified retries and dead-lettering.

Importing the package has no side effects; submodules are imported on demand.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
