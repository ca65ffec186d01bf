"""
git-watchtower

A terminal dashboard that watches a git repository's remote branches,
reconciles them with local ones, auto-pulls the current branch and
supervises a dev server across branch switches.
"""

__version__ = "1.0.0"

# Re-export core types for convenience
from watchtower.core.config.models import WatchtowerConfig
from watchtower.core.git.branches import Branch

__all__ = ["Branch", "WatchtowerConfig", "__version__"]
