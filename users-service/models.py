import threading
from typing import Dict, List, Optional
from pydantic import BaseModel


class User(BaseModel):
    id: int
    name: str
    email: str


class StoreError(Exception):
    """Base class for record store failures."""


class ValidationError(StoreError):
    pass


class NotFound(StoreError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


SEED_USERS = [
    User(id=1, name="User Name 1", email="user@mail.com"),
    User(id=2, name="Alex Sid 2", email="alexsid@mail.com"),
]


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class UserStore:
    """
    Stockage en mémoire des utilisateurs, partagé entre les requêtes.

    Every operation runs under a single lock, so concurrent writers never
    corrupt the map and never receive the same id. Ids are handed out from
    a monotonic counter and are not reused after a delete.
    """

    def __init__(self, users: Optional[List[User]] = None):
        self._lock = threading.Lock()
        self._users: Dict[int, User] = {}
        for user in users or []:
            self._users[user.id] = user.model_copy()
        self._last_id = max(self._users, default=0)

    @classmethod
    def seeded(cls) -> "UserStore":
        return cls(SEED_USERS)

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def list(self) -> List[User]:
        with self._lock:
            return [user.model_copy() for user in self._users.values()]

    def get(self, user_id: int) -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFound(user_id)
            return user.model_copy()

    def create(self, name: str, email: str) -> User:
        if _is_blank(name) or _is_blank(email):
            raise ValidationError("Name and Email are required.")
        with self._lock:
            user = User(id=self._next_id(), name=name, email=email)
            self._users[user.id] = user
            return user.model_copy()

    def update(self, user_id: int, candidate_id: int, name: str, email: str) -> User:
        # L'ID de l'URL doit correspondre à celui du body, même si l'utilisateur n'existe pas
        if candidate_id != user_id:
            raise ValidationError("ID in URL does not match ID in the body.")
        if _is_blank(name) or _is_blank(email):
            raise ValidationError("Name and Email are required.")
        with self._lock:
            if user_id not in self._users:
                raise NotFound(user_id)
            user = User(id=user_id, name=name, email=email)
            self._users[user_id] = user
            return user.model_copy()

    def delete(self, user_id: int) -> None:
        with self._lock:
            if self._users.pop(user_id, None) is None:
                raise NotFound(user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)
