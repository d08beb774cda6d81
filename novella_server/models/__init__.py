# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from novella_server.models.base import Base
from novella_server.models.user import User

__all__ = [
    "Base",
    "User",
]
