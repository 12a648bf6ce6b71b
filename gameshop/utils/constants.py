class ProductType:
    AVAILABLE = "available"
    PREORDER = "preorder"
    ALL = (AVAILABLE, PREORDER)


class ProductStatus:
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    DISCONTINUED = "discontinued"
    ALL = (IN_STOCK, OUT_OF_STOCK, DISCONTINUED)


class GameServer:
    ALL = ("NA", "JP", "TW", "KR", "EN", "Global")
    DEFAULT = "JP"


class Role:
    USER = "user"
    OWNER = "owner"


class CheckoutState:
    FORM = "form"
    PAYMENT = "payment"
    SUCCESS = "success"


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"


class Colors:
    SUCCESS = 0x22C55E
    WARNING = 0xFACC15
    ERROR = 0xEF4444


MAX_PRODUCT_IMAGES = 4
OTP_CODE_LENGTH = 6
ACTIVE_KEY_ID = "v1"
SUPPORT_MESSAGE = "Credentials are unavailable right now. Please contact support with your order ID."
