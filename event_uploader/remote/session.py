import requests
from requests.adapters import HTTPAdapter


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def make_session(max_conns: int = 4) -> requests.Session:
    """
    Pooled HTTP session shared by the inventory and upload clients.
    Retries are left at zero: the orchestrator owns the retry policy.
    """
    sess = requests.Session()
    adapter = HTTPAdapter(pool_connections=max_conns, pool_maxsize=max_conns, max_retries=0)
    sess.mount("http://", adapter)
    sess.mount("https://", adapter)
    return sess
