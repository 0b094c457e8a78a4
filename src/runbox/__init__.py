"""runbox - run unfamiliar project code in auto-provisioned containers."""

__version__ = "0.1.0"
