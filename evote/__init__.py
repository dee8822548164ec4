"""Electronic voting backend with a single-vote-per-voter guarantee."""

__version__ = "1.0.0"
