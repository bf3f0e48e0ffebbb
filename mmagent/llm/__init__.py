from .client import ILLMClient as ILLMClient
from .client import create_llm_client as create_llm_client
from .client import resolve_model as resolve_model
from .models import ContentPart as ContentPart
from .models import ImagePart as ImagePart
from .models import LLMMessage as LLMMessage
from .models import MessageContent as MessageContent
from .models import ResolvedModel as ResolvedModel
from .models import TextPart as TextPart
from .models import ToolCall as ToolCall
from .models import image_part as image_part
from .models import text_part as text_part
from .service import LLMService as LLMService
