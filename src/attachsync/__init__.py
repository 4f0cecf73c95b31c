"""AttachSync - two-way attachment synchronization with a remote issue tracker."""

__version__ = "0.1.0"
