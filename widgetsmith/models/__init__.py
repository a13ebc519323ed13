# widgetsmith/models/__init__.py
# Import all models here so Base.metadata knows about them
from widgetsmith.models.base import Base
from widgetsmith.models.tool import CustomTool
