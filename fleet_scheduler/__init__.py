"""Fleet scheduler - distributed periodic-job scheduler for a server fleet."""

__app_name__ = "fleetsched"
__version__ = "0.1.0"
