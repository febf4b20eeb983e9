"""Common - logging, monitoring and numeric primitives shared by all modules."""
