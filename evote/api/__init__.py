"""HTTP service for casting votes, managing the election and publishing results."""
