# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Core infrastructure modules for the schedule engine backend.

- task_queue: PostgreSQL-backed priority queue and worker pool
- distributed_lock: Leased cross-process locks
- exceptions: Exception hierarchy
- error_handlers: FastAPI exception-to-JSON handlers
"""
