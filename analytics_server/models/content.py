"""Read-only views of the forum tables that analytics joins against.

Only the columns the analytics exports need are mapped; the application
owning these tables manages the rest of their schema.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text

from analytics_server.lib.database import Base


class ForumPost(Base):
  __tablename__ = 'forum_posts'

  id = Column(String(255), primary_key=True)
  title = Column(String(500), nullable=False)
  content = Column(Text, nullable=True)
  group_id = Column(String(255), nullable=True)
  author_id = Column(String(255), nullable=True)
  author_name = Column(String(255), nullable=True)
  like_count = Column(Integer, nullable=False, default=0)
  comment_count = Column(Integer, nullable=False, default=0)
  created_at = Column(DateTime(timezone=True), nullable=True)

  def to_dict(self) -> dict:
    return {
      'id': self.id,
      'title': self.title,
      'content': self.content,
      'group_id': self.group_id,
      'author': {'id': self.author_id, 'name': self.author_name},
      'likes': self.like_count or 0,
      'comments': self.comment_count or 0,
      'created_at': self.created_at.isoformat() if self.created_at else None,
    }


class ForumGroup(Base):
  __tablename__ = 'forum_groups'

  id = Column(String(255), primary_key=True)
  name = Column(String(255), nullable=False)
  description = Column(Text, nullable=True)
  member_count = Column(Integer, nullable=False, default=0)
  post_count = Column(Integer, nullable=False, default=0)
  created_at = Column(DateTime(timezone=True), nullable=True)

  def to_dict(self) -> dict:
    return {
      'id': self.id,
      'name': self.name,
      'description': self.description,
      'members': self.member_count or 0,
      'posts': self.post_count or 0,
      'created_at': self.created_at.isoformat() if self.created_at else None,
    }


class User(Base):
  __tablename__ = 'users'

  id = Column(String(255), primary_key=True)
  name = Column(String(255), nullable=True)
