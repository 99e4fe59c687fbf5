"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey
)
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    整个支付聚合存放在一行：退款、状态历史、失败信息与网关数据使用 JSON 列，
    这样一次带 version 条件的 UPDATE 即可原子地推进聚合。
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 归属
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True, comment="用户ID")
    order_id = Column(Integer, nullable=True, comment="关联订单ID（捕获成功后写入）")

    # 网关信息
    payment_method = Column(String(20), nullable=False, comment="支付方式: card/paypal/...")
    gateway = Column(String(30), nullable=False, index=True, comment="支付网关: paypal/card_simulated/...")
    gateway_order_id = Column(String(100), nullable=True, index=True, comment="网关预捕获订单号")
    gateway_transaction_id = Column(
        String(100), nullable=True, unique=True, comment="网关交易号（捕获ID），全局唯一"
    )

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    market = Column(String(10), nullable=False, default="GB", comment="市场")
    subtotal = Column(Numeric(precision=15, scale=2), nullable=True, comment="小计（不含税）")
    tax_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="税额")
    shipping_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="运费")
    discount_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="折扣")

    # 手续费（派生字段，每次持久化前重算）
    fee_percentage = Column(Numeric(precision=6, scale=3), nullable=False, default=0, comment="费率百分比")
    fee_fixed = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="固定费用")
    fee_total = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="手续费合计")

    # 退款汇总（冗余，便于查询；真值来自 refunds 列）
    total_refunded = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="已退款金额")

    # 状态
    status = Column(
        String(30),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/processing/authorized/capturing/completed/failed/cancelled/"
                "refunded/partially_refunded/disputed/chargeback"
    )

    # 聚合内的集合
    status_history = Column(JSON, nullable=False, default=list, comment="状态历史")
    refunds = Column(JSON, nullable=False, default=list, comment="退款记录")
    failure = Column(JSON, nullable=True, comment="失败信息")
    gateway_data = Column(JSON, nullable=True, comment="网关专属数据")
    billing_address = Column(JSON, nullable=True, comment="账单地址")
    notes = Column(Text, nullable=True, comment="备注")

    # 乐观锁
    version = Column(Integer, nullable=False, default=1, comment="版本号")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")

    # 索引
    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_gateway_order", "gateway", "gateway_order_id"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, gateway='{self.gateway}', "
            f"amount={self.amount}, status='{self.status}', version={self.version})>"
        )
