from liquidation_monitor.monitor import LiquidationMonitor, SweepSummary
from liquidation_monitor.scheduler import LiquidationScheduler

__all__ = ["LiquidationMonitor", "LiquidationScheduler", "SweepSummary"]
