"""
TaskBridge Agent: keeps a local OmniFocus library in step with TaskBridge.

Runs on the user's Mac, forwards local task state to the remote
coordination service on a schedule, applies queued remote commands,
and pairs new devices through a short-lived browser approval.
"""

import os

__version__ = "0.1.0"
__author__ = "TaskBridge"

AGENT_HOME = os.environ.get("TASKBRIDGE_HOME", "~/.taskbridge")
