"""
Audio Feature Cache - tempo-aligned audio analysis

Structure:
- common/    - Shared utilities (logging, monitoring, FFT/tempo primitives)
- core/      - Application core (config, errors, interfaces, cache store)
- modules/   - Business modules (analysis, sampling, intents)
- services/  - Consumer API facade
"""

__version__ = "1.0.0"
