"""Background task pipeline and churn-risk scoring for employee retention analytics."""
