"""
Test suite for the CRM bulk updater.

Run all tests: pytest
Run unit tests only: pytest tests/unit/
Run specific file: pytest tests/unit/test_pipeline_service.py -v
"""
