"""
Core functionality for voxchain.

This package contains the main logic for:
- Silence detection and removal on recorded audio
- The processing unit / pipeline library and its persistence
- Batch planning and chained prompt compilation
- Pipeline execution against a completion service
- Configuration management
"""
