"""ABA billing back office: payroll time-log imports and batch email queue."""

__version__ = "0.1.0"
