"""
Cycle orchestration: the step scheduler, its runner loop, operator recovery and notifications.

`main.py` (loop / --once) and `src/api/app.py` (HTTP trigger) both drive the same `CycleScheduler`.
"""
