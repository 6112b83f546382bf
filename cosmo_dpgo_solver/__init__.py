"""cosmo_dpgo_solver: reference local optimiser for distributed pose-graph runs.

This package provides:
- Measurement models (relative pose edges tagged with robot IDs)
- Robust weight kernels (GNC-TLS, Huber, Cauchy)
- A lifted pose-graph optimiser implementing the optimiser interface the
  coordination layer consumes
- A JSON team dataset loader and a synthetic team generator

Design intent:
The coordination layer never looks inside the optimiser, so a native solver
can replace ``LiftedPoseGraphOptimizer`` as long as it implements
``PoseGraphOptimizer``.
"""
__all__ = ["loader", "models", "optimizer", "robust"]
__version__ = "0.1.0"
