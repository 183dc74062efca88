"""CRM records touched by Salesforce sync -- models, schemas, and the local store.

Provides SQLAlchemy models (User, Account, Contact, Opportunity), Pydantic
record schemas, the CRMStore contract, and CRMRepository for async access.
"""
