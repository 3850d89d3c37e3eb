# 用户 / 余额
from .user import User
# 支付订单
from .payment_order import PaymentOrder
# 积分流水
from .credit_transaction import CreditTransaction
# webhook 审计
from .payment_event import PaymentEvent
# 生成图片
from .generated_image import GeneratedImage
from .base import *
