"""Manifest-reconciled uploads of static build output to a COS bucket."""
