# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""Database package"""
from .database import Base, engine, SessionLocal, get_db, init_db

__all__ = ["Base", "engine", "SessionLocal", "get_db", "init_db"]
