DEFAULT_ORDER_NUMBER_PREFIX = "MO"
DEFAULT_ORDER_NUMBER_WIDTH = 6
DEFAULT_INVENTORY_TOPIC = "inventory.tag_in"
