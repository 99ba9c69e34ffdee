"""AILinux live ISO builder (build orchestration core).

Core design goals:
- Phases run strictly in order, with rollback on critical failure
- Mounts are always torn down, newest first, without blocking on stuck ones
- Failures are classified and retried under a bounded recovery policy
- Cleanup never harms the invoking terminal or SSH session
- A build report is written for every run
"""

__all__ = []
