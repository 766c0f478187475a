"""clusterdeck — package lesson jobs and run them on a small processing cluster.

A lesson job is built into a ``.pyz`` Job Artifact, staged onto a shared
data volume, submitted to the Cluster Coordinator and executed by a worker
pool; the submitting terminal polls until a terminal status is reported.
"""

__version__ = "0.1.0"
