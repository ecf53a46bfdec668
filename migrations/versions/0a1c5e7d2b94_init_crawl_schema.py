"""
初始化数据库结构（首个迁移）

从空库一次性创建组织、项目、抓取运行、待抓取队列、页面、快照、评分与审计表；
后续结构变更通过增量迁移完成。
"""
from __future__ import annotations

from alembic import op


# revision identifiers, used by Alembic.
revision = "0a1c5e7d2b94"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:  # noqa: D401
    """按 ORM 元数据创建全部表结构与索引/约束。"""
    bind = op.get_bind()
    from aeo.models import Base  # 延迟导入以避免循环引用

    Base.metadata.create_all(bind=bind)


def downgrade() -> None:  # noqa: D401
    """删除全部表（仅用于开发环境）。"""
    bind = op.get_bind()
    from aeo.models import Base  # 延迟导入以避免循环引用

    Base.metadata.drop_all(bind=bind)
