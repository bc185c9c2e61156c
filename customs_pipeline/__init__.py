"""
Customs Pipeline - HS Classification, Review and Declaration Submission

A service covering:
- Automated HS code classification with confidence flagging
- Result caching for repeated item descriptions
- Human review workflow with an audit trail
- Declaration delivery to customs (API with SFTP fallback)
- Submission status reconciliation
"""

__version__ = "1.0.0"
