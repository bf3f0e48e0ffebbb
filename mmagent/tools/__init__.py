from typing import Annotated as Annotated

from .executor import ILogger as ILogger
from .executor import LoggingToolExecutor as LoggingToolExecutor
from .executor import ToolExecutor as ToolExecutor
from .params import param as param
from .tool import Tool as Tool
from .tool import ToolMeta as ToolMeta
from .tool import tool as tool
