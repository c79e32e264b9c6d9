"""
WakeLab - Wake Word Training Workspace Orchestrator

Bootstraps an openWakeWord training environment on small hosts such as a
Raspberry Pi and supervises long-running training runs in a detached tmux
session, collecting the trained models when the run finishes.
"""

__version__ = "0.1.0"
