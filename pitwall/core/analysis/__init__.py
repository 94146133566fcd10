"""Upload analysis: report normalization and job orchestration."""
