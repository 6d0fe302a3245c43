"""In-memory provisioner for testing the execution engine.

Key Features:
- In-memory resource store keyed by remote identity
- Recording of every create/update/destroy call in order
- Error injection: transient failures that clear after N attempts, and
  permanent failures with a reason code
- Live-state tampering for drift detection tests

Usage:
    from provisioner_mock import MockProvisioner

    provisioner = MockProvisioner()
    provisioner.fail_transiently("lambda_function.lambda-widget-clubhouse", times=2)
    engine = ExecutionEngine(provisioner, store, sleep=lambda _: None)
"""

from .client import MockCall, MockProvisioner, failing_lambda_provisioner

__all__ = ["MockCall", "MockProvisioner", "failing_lambda_provisioner"]
