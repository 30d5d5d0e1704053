# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Schedule Engine Tests

Test organization:
- test_scheduler_service.py: Trigger pipeline, at-most-once, scan tick
- test_quota_enforcer.py / test_priority_service.py: Plan limits and dispatch priority
- test_result_reconciler.py / test_canvas_reclaimer.py: Signal handlers
- test_task_queue.py / test_distributed_lock.py / test_concurrency_counter.py: Coordination primitives
"""
