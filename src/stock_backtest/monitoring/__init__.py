"""Result logging for backtest runs."""

from .logger import StepLogger

__all__ = ["StepLogger"]
