"""Run orchestration: task execution, scheduling, review and the run loop."""
