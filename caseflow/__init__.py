"""
Case Workflow Orchestration Engine

Drives cases through ordered stages of dependent tasks, propagates completion
status, monitors SLA deadlines and reacts to business events through
automated trigger rules.
"""

__version__ = "1.0.0"
