import logging
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from ..config.config import settings
from ..db.db_client import AsyncPostgresClient, STUDENT_RFID_TAG_KEY, STUDENT_SCHOOL_NUMBER_KEY
from ..db.errors import UniqueConstraintError
from ..models.db_models import Student
from ..models.pagination import Page
from ..tools.storage_guard import StorageGuard
from .errors import ConflictError, InactiveError, InvalidArgumentError, NotFoundError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("school_number", "rfid_tag", "full_name", "class_name", "grade")


def _conflict_message(constraint: Optional[str]) -> str:
    if constraint == STUDENT_RFID_TAG_KEY:
        return "This RFID tag is already assigned to another student."
    if constraint == STUDENT_SCHOOL_NUMBER_KEY:
        return "A student with this school number already exists."
    return "Student conflicts with an existing student."


def normalize_paging(page: Optional[int], limit: Optional[int]) -> tuple:
    """Page numbers start at 1; page size falls back to the default and is capped."""
    page = page or 1
    limit = limit or settings.DEFAULT_PAGE_SIZE
    if page < 1 or limit < 1:
        raise InvalidArgumentError("page and limit must be positive integers.")
    return page, min(limit, settings.MAX_PAGE_SIZE)


class StudentService:
    """
    The student directory: identity lookups for the ledger and the report,
    plus the administrative operations that are the only way students change.
    """
    def __init__(self, db_client: AsyncPostgresClient, storage: Optional[StorageGuard] = None):
        self.db_client = db_client
        self.storage = storage or StorageGuard()

    # ----- Lookups -----

    async def resolve_by_tag(self, rfid_tag: str) -> Student:
        """Student owning the tag. Inactive students are refused: no scan may be processed for them."""
        student = await self.get_by_tag(rfid_tag)
        if not student.active:
            logger.warning(f"Scan refused: student '{student.school_number}' is inactive.")
            raise InactiveError("Student account is inactive.")
        return student

    async def get_by_tag(self, rfid_tag: str) -> Student:
        if not rfid_tag or not rfid_tag.strip():
            raise InvalidArgumentError("RFID tag is required.")
        student = await self.storage.read(lambda: self.db_client.get_student_by_tag(rfid_tag.strip()), "student lookup by tag")
        if not student:
            raise NotFoundError("Student not found with this RFID tag.")
        return student

    async def resolve_by_id(self, student_id: UUID) -> Student:
        student = await self.storage.read(lambda: self.db_client.get_student(student_id), "student lookup")
        if not student:
            raise NotFoundError("Student not found.")
        return student

    async def search(
        self,
        class_name: Optional[str] = None,
        grade: Optional[str] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[Student]:
        page, limit = normalize_paging(page, limit)
        search = search.strip() if search else None
        students, total = await self.storage.read(
            lambda: self.db_client.search_students(
                class_name=class_name, grade=grade, active=active, search=search,
                offset=(page - 1) * limit, limit=limit,
            ),
            "student search",
        )
        return Page[Student].build(students, total, page, limit)

    async def list_for_report(self, class_name: Optional[str] = None, grade: Optional[str] = None) -> List[Student]:
        return await self.storage.read(lambda: self.db_client.list_students(class_name=class_name, grade=grade), "student listing")

    # ----- Administration -----

    async def create(self, data: Dict[str, Any]) -> Student:
        data = {key: value.strip() if isinstance(value, str) else value for key, value in data.items()}
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise InvalidArgumentError(f"Missing required fields: {', '.join(missing)}")

        existing = await self.storage.read(lambda: self.db_client.get_student_by_tag(data["rfid_tag"]), "student lookup by tag")
        if existing:
            raise ConflictError(_conflict_message(STUDENT_RFID_TAG_KEY))
        existing = await self.storage.read(lambda: self.db_client.get_student_by_school_number(data["school_number"]), "student lookup by number")
        if existing:
            raise ConflictError(_conflict_message(STUDENT_SCHOOL_NUMBER_KEY))

        student = Student(student_id=uuid4(), **data)
        try:
            created = await self.storage.write(lambda: self.db_client.add_student(student), "student insert")
        except UniqueConstraintError as e:
            raise ConflictError(_conflict_message(e.constraint)) from e
        logger.info(f"Student '{created.school_number}' created with tag '{created.rfid_tag}'.")
        return created

    async def update(self, student_id: UUID, changes: Dict[str, Any]) -> Student:
        """
        Partial update. A new tag (or school number) must not be bound to any other
        student; both students keep their tags when the change is refused.
        """
        current = await self.resolve_by_id(student_id)
        changes = {key: value.strip() if isinstance(value, str) else value for key, value in changes.items() if value is not None}
        for name in REQUIRED_FIELDS:
            if name in changes and not changes[name]:
                raise InvalidArgumentError(f"{name} cannot be empty.")

        new_tag = changes.get("rfid_tag")
        if new_tag and new_tag != current.rfid_tag:
            holder = await self.storage.read(lambda: self.db_client.get_student_by_tag(new_tag), "student lookup by tag")
            if holder and holder.student_id != current.student_id:
                logger.warning(f"Tag '{new_tag}' refused for '{current.school_number}': held by '{holder.school_number}'.")
                raise ConflictError(_conflict_message(STUDENT_RFID_TAG_KEY))

        new_number = changes.get("school_number")
        if new_number and new_number != current.school_number:
            holder = await self.storage.read(lambda: self.db_client.get_student_by_school_number(new_number), "student lookup by number")
            if holder and holder.student_id != current.student_id:
                raise ConflictError(_conflict_message(STUDENT_SCHOOL_NUMBER_KEY))

        try:
            updated = await self.storage.write(lambda: self.db_client.update_student(student_id, changes), "student update")
        except UniqueConstraintError as e:
            raise ConflictError(_conflict_message(e.constraint)) from e
        if not updated:
            raise NotFoundError("Student not found.")
        return updated

    async def deactivate(self, student_id: UUID) -> Student:
        student = await self.update(student_id, {"active": False})
        logger.info(f"Student '{student.school_number}' deactivated.")
        return student

    async def activate(self, student_id: UUID) -> Student:
        return await self.update(student_id, {"active": True})

    async def delete(self, student_id: UUID) -> None:
        deleted = await self.storage.write(lambda: self.db_client.delete_student(student_id), "student delete")
        if not deleted:
            raise NotFoundError("Student not found.")
        logger.info(f"Student {student_id} deleted.")
