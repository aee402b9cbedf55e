from . import cluster, plugin

__all__ = ['cluster', 'plugin']
