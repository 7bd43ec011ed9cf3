"""
FORKYARD — isolated, attributable workspaces for concurrent coding agents.
"""

__version__ = "0.3.0"
__codename__ = "FORKYARD"
__tagline__ = "One branch per agent. One commit per change."
