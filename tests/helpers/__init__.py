"""
Core Host - Test Helpers

Provides utilities for testing:
- Fake ChangeSet manager, backend transport, validation runner and git helper
- Temporary project/app-home context
- Signed bundle builders
"""
