from typing import Callable, List, Optional

from nonebot.log import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import get_session
from .errors import EntityNotFound
from .models import Member, MemberRecord


class MemberService:
    """Member records keyed by external chat identity"""

    def __init__(self, session_factory: Callable[[], Session] = get_session) -> None:
        self.session_factory = session_factory

    def get_or_create(self, external_id: str) -> MemberRecord:
        """Get or create a member record"""
        if not external_id:
            raise ValueError("Missing external user identity")

        with self.session_factory() as session:
            member = session.scalars(
                select(Member).where(Member.external_id == external_id)
            ).first()
            if member is not None:
                return MemberRecord.model_validate(member)

            member = Member(external_id=external_id)
            session.add(member)
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently by another handler
                session.rollback()
                member = session.scalars(
                    select(Member).where(Member.external_id == external_id)
                ).one()
            else:
                logger.info(f"Member created: id={member.id} external_id={external_id}")
            return MemberRecord.model_validate(member)

    def get(self, member_id: int) -> Optional[MemberRecord]:
        with self.session_factory() as session:
            member = session.get(Member, member_id)
            return MemberRecord.model_validate(member) if member else None

    def update_profile(
        self,
        member_id: int,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        language_code: Optional[str] = None,
    ) -> MemberRecord:
        with self.session_factory() as session, session.begin():
            member = session.get(Member, member_id)
            if member is None:
                raise EntityNotFound("member", [member_id])

            if first_name is not None:
                member.first_name = first_name
            if last_name is not None:
                member.last_name = last_name
            if phone is not None:
                member.phone = phone
            if language_code is not None:
                member.language_code = language_code
            session.flush()
            return MemberRecord.model_validate(member)

    def set_admin(self, member_id: int, is_admin: bool = True) -> MemberRecord:
        with self.session_factory() as session, session.begin():
            member = session.get(Member, member_id)
            if member is None:
                raise EntityNotFound("member", [member_id])
            member.is_admin = is_admin
            session.flush()
            record = MemberRecord.model_validate(member)

        logger.info(f"Member {member_id} admin flag set to {is_admin}")
        return record

    def list_admins(self) -> List[MemberRecord]:
        with self.session_factory() as session:
            admins = session.scalars(
                select(Member).where(Member.is_admin == True).order_by(Member.id)  # noqa: E712
            ).all()
            return [MemberRecord.model_validate(m) for m in admins]
