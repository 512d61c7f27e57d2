"""
Permission override resolution.

Folds registry defaults and per-account role overrides down an account chain to
produce the effective permission for a role at any account or course.
"""
