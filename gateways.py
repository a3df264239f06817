"""
Store gateways for projects and tasks.

Thin wrappers around the ``project`` and ``task`` collections. They know the
document layout but none of the board rules; those live in board.py.
"""
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument, UpdateOne
from pymongo.database import Database

from database import create_document, get_documents, utcnow

Doc = Dict[str, Any]


class ProjectGateway:
    collection_name = "project"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    def find_by_id(self, project_id: ObjectId) -> Optional[Doc]:
        return self.collection.find_one({"_id": project_id})

    def find_one(self, filter_dict: Doc) -> Optional[Doc]:
        return self.collection.find_one(filter_dict)

    def find(self, filter_dict: Doc) -> List[Doc]:
        return get_documents(self.database, self.collection_name, filter_dict, sort=[("createdAt", DESCENDING)])

    def find_for_user(self, user_id: str) -> List[Doc]:
        return self.find({"$or": [{"ownerId": user_id}, {"members": user_id}]})

    def create(self, data: Doc) -> Doc:
        return create_document(self.database, self.collection_name, data)

    def save(self, project: Doc) -> Doc:
        project["updatedAt"] = utcnow()
        self.collection.replace_one({"_id": project["_id"]}, project)
        return project

    def update(self, project_id: ObjectId, update: Doc) -> Optional[Doc]:
        """Apply an update operator document atomically and return the result."""
        update = {**update, "$set": {**update.get("$set", {}), "updatedAt": utcnow()}}
        return self.collection.find_one_and_update(
            {"_id": project_id}, update, return_document=ReturnDocument.AFTER
        )

    def delete_by_id(self, project_id: ObjectId) -> None:
        self.collection.delete_one({"_id": project_id})


class TaskGateway:
    collection_name = "task"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    def find_one(self, filter_dict: Doc) -> Optional[Doc]:
        return self.collection.find_one(filter_dict)

    def find(self, filter_dict: Doc, sort: Optional[List] = None) -> List[Doc]:
        return get_documents(self.database, self.collection_name, filter_dict, sort=sort)

    def board(self, project_id: ObjectId) -> List[Doc]:
        return self.find({"projectId": project_id, "backlog": {"$ne": True}}, sort=[("order", ASCENDING)])

    def backlog(self, project_id: ObjectId) -> List[Doc]:
        return self.find({"projectId": project_id, "backlog": True}, sort=[("createdAt", DESCENDING)])

    def count_documents(self, filter_dict: Doc) -> int:
        return self.collection.count_documents(filter_dict)

    def create(self, data: Doc) -> Doc:
        return create_document(self.database, self.collection_name, data)

    def update_fields(self, task_id: ObjectId, set_fields: Doc, unset_fields: Sequence[str] = ()) -> Optional[Doc]:
        update: Doc = {"$set": {**set_fields, "updatedAt": utcnow()}}
        if unset_fields:
            update["$unset"] = {name: "" for name in unset_fields}
        return self.collection.find_one_and_update(
            {"_id": task_id}, update, return_document=ReturnDocument.AFTER
        )

    def bulk_write(self, operations: List[UpdateOne], transactional: bool = False) -> None:
        """Apply every operation in one round trip, optionally inside a transaction."""
        if not operations:
            return
        if not transactional:
            self.collection.bulk_write(operations, ordered=True)
            return
        with self.database.client.start_session() as session:
            with session.start_transaction():
                self.collection.bulk_write(operations, ordered=True, session=session)

    def delete_by_id(self, task_id: ObjectId) -> None:
        self.collection.delete_one({"_id": task_id})

    def delete_many(self, filter_dict: Doc) -> int:
        return self.collection.delete_many(filter_dict).deleted_count


class UserDirectory:
    """Read-only view of the auth service's ``user`` collection, used for display info."""

    collection_name = "user"

    def __init__(self, database: Database):
        self.collection = database[self.collection_name]

    def find_many(self, user_ids: Sequence[Any]) -> Dict[str, Doc]:
        candidates: List[Any] = []
        for user_id in user_ids:
            candidates.append(user_id)
            if isinstance(user_id, str) and ObjectId.is_valid(user_id):
                candidates.append(ObjectId(user_id))
        if not candidates:
            return {}
        docs = self.collection.find({"_id": {"$in": candidates}}, {"name": 1, "email": 1})
        return {str(doc["_id"]): doc for doc in docs}
