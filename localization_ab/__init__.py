"""
localization_ab – deterministic payload assignment for localization experiments.

Each user identifier is bucketed with FNV‑1a onto a payload variant loaded at
boot; the ``loadtest`` and ``allocation`` harnesses probe the service under
slow‑client load and check that assignments stay sticky.
"""

__version__ = "0.1.0"
