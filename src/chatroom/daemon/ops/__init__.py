"""
Daemon operation handlers, grouped by the part of the system they drive:
- task_ops: Task Store
- participant_ops: participant registry
- machine_ops: daemon registry and command queue
- message_ops: messages, classification and handoffs
"""

from __future__ import annotations
