"""
Test suites package.

`testsuites` is importable so scenario modules can share the helpers in
`testsuites.visual_testing.framework` (synthetic screenshots, slowed-down
pipeline components) and so `run_tests.py` can address suites by path.
"""
