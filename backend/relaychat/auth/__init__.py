"""Authentication module (username/phone + password, JWT bearer tokens).

Services:
    - CredentialService: issues and verifies bearer tokens.
    - hash_password / verify_password: PBKDF2 password hashing.
"""
