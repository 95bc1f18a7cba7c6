"""TriggerCTL - trigger downstream jobs, wait for them and retry failures."""

__version__ = "1.0.0"
