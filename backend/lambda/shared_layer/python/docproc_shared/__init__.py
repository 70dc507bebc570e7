"""docproc_shared — Shared utilities for the document-processor config Lambdas.

Provides:
    - Cognito JWT authentication (cookie-based) and internal-key auth
    - DynamoDB / Secrets Manager client factories
    - HTTP response helpers with CORS
    - DynamoDB serialization/deserialization
    - Condition / update expression builder
    - Advisory entity locks and the DynamoDB store base class
"""

__version__ = "1.0.0"
