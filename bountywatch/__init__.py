"""bountywatch – watches bounty listing pages and reports what changed."""

__version__ = "0.1.0"
