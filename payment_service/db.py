from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

def make_session_factory(url: str):
    engine = create_engine(url, pool_pre_ping=True)
    return engine, sessionmaker(bind=engine, expire_on_commit=False)
