"""BabyGPT: Telegram parenting assistant with canonical/generated answer arbitration."""

__version__ = "0.1.0"
