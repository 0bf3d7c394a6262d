"""ORM models for the relational store."""

from stock_kernel.models.consistency import ConsistencyRecordModel, WriteOutcomeModel
from stock_kernel.models.ingredient import BatchModel, IngredientModel
from stock_kernel.models.movement import PriceHistoryModel, StockMovementModel

__all__ = [
    "BatchModel",
    "ConsistencyRecordModel",
    "IngredientModel",
    "PriceHistoryModel",
    "StockMovementModel",
    "WriteOutcomeModel",
]
