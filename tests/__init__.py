"""
Test suite for voxchain.

This package contains tests for all core functionality including:
- Silence analysis and trimming
- Unit/pipeline data model and library persistence
- Batch planning and chained prompt compilation
- Pipeline execution with a fake completion service
- Configuration management and the CLI
"""
