from sqlalchemy.orm import declarative_base


Base = declarative_base()

# Credentials live in a separate database from the rental data.
CredentialBase = declarative_base()
