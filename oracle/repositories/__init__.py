"""Data access layer repositories.

Each repository module provides async functions for database operations.
All code uses SQLAlchemy ORM models from `oracle.database.orm` with the
`get_session()` context manager and returns engine schemas.

ORM-based repositories:
- picks_orm: individual backend picks and their settlement
- consensus_orm: consensus records
- combination_stats_orm: accuracy per agreeing backend combination
- factor_outcomes_orm: per-factor outcomes of settled picks
- calibrations_orm: append-only calibration snapshots
"""

from . import calibrations_orm
from . import combination_stats_orm
from . import consensus_orm
from . import factor_outcomes_orm
from . import picks_orm

__all__ = [
    "calibrations_orm",
    "combination_stats_orm",
    "consensus_orm",
    "factor_outcomes_orm",
    "picks_orm",
]
