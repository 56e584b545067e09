"""scan_engine_shared — Shared code for the scan engine Lambdas and workers.

Provides:
    - Environment configuration and the worker registry
    - boto3 client singletons (DynamoDB, SQS, S3, SNS)
    - Orchestration record / envelope models
    - DynamoDB, SQS and S3 adapters plus in-process equivalents
    - The conditional merge-trigger transition
    - HTTP response helpers with CORS
"""

__version__ = "1.0.0"
