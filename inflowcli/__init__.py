"""inflowcli — wallet inflow volume tracker for L2 chains."""

__version__ = "0.1.0"
