"""rkvbench: run the rkv benchmark suite and publish its reports."""

__version__ = "0.1.0"
