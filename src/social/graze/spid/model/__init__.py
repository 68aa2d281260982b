"""
Data Models

Plain value types shared by the client components. Nothing here performs I/O.

Key Models:
- credential.py: Credential, the immutable access credential and its
  serialized storage form
- request.py: ApiRequest, one outbound API call with its completion future,
  and the orchestrator state enums
"""
