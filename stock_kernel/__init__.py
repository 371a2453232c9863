"""
Stock Kernel

Instance-level inventory tracking with:
- Individually identified stock units frozen at acquisition cost
- FIFO / cost-based / manual allocation with conditional-claim concurrency
- Tag lifecycle (reserve, loan, defect, consume) as a terminal state machine
- Derived stock snapshots -- no stored counters
"""

__version__ = "0.1.0"
