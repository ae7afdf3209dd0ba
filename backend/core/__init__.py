"""Core model and mathematics for the unified market risk service.

This package contains pure, venue-agnostic building blocks:

- ``odds_math``   — price sanitising, odds conversion, vig removal
- ``contracts``   — unified Position / Contract / Portfolio records
- ``risk_config`` — tunable thresholds with environment overrides
- ``factors``     — thematic factor taxonomy and keyword tagging

Nothing in this package imports from ``backend.services`` or ``backend.models``.
All modules are side-effect-free and unit-testable in isolation.
"""
