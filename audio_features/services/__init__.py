"""Services - consumer API facade."""

from .feature_service import FeatureService, create_feature_service

__all__ = [
    "FeatureService",
    "create_feature_service",
]
