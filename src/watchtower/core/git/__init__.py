"""
Git integration: command execution, failure classification, branch
reconciliation, remote URL handling and PR status lookup.

Import from the submodules directly; ``watchtower.core.errors`` depends on
the classifier, so this package keeps its own import surface empty.
"""
