"""Custom Service Reconciler (CSR).

Converges one managed key/value child resource (a ConfigMap on Kubernetes)
per CustomService resource:
 - finalizer-guarded creation, full-replace updates and cleanup on delete
 - an explicit kind -> reconciler registration table and dispatcher
 - sqlite store of record and event log, or a Kubernetes backend

The core reconciler holds no locks beyond its execution counter; callers
serialize invocations per resource identity.
"""
