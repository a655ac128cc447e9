"""Keep a proxy node's inbounds, users and traffic in step with a management panel."""

__version__ = "0.1.0"