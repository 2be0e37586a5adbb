"""SWE Team: a coordinator that turns a task description into a reviewed pull request."""

__version__ = "0.1.0"
