"""ErrorWatch metrics agent - pushes host CPU, memory and network metrics."""
__version__ = "0.1.0"
