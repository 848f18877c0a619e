"""
AI 文本协作方 (标题生成 + 追问建议)。

主要功能:
- 根据 LLM_PROVIDER (openai / groq / grok) 构建 OpenAI 兼容客户端
- generate_title(prompt): 根据首条用户消息生成不超过 6 个词的标题，失败时返回 FALLBACK_TITLE
- generate_followups(user_text, assistant_text): 生成 5 条追问建议，失败时返回 []
- 去除代码块与类代码行，只把自然语言上下文交给模型

两个生成函数都不会向调用方抛出异常 (fail-open)。

外部库: openai
注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import json
import logging
import re
import threading

from openai import OpenAI

from chatapp import config

logger = logging.getLogger(__name__)

FALLBACK_TITLE = 'New conversation'
SUGGESTION_COUNT = 5

TITLE_SYSTEM_PROMPT = (
    "You are a title generator. Generate a short, concise title (max 6 words) for a "
    "conversation based on the user's first message. The title should capture the main "
    "topic or intent. Do not use quotes or punctuation at the end. Just output the title, nothing else."
)

SUGGESTIONS_SYSTEM_PROMPT = (
    "You generate follow-up suggestions to continue a conversation. Use only natural-language "
    "context; ignore code blocks, inline code, ASCII art, and code-like fragments. Return exactly "
    "five short suggestions. No numbering, no quotes, no markdown, no code. "
    'Respond with a JSON object of the form {"suggestions": ["...", "...", "...", "...", "..."]}.'
)

_client = None
_client_lock = threading.Lock()

_CODE_KEYWORDS = re.compile(
    r'^(const|let|var|function|class|import|export|if|for|while|return|def|public|private|'
    r'package|select|insert|update|delete)\b',
    re.IGNORECASE,
)
_CODE_PUNCTUATION = re.compile(r'(=>|;|\{|\}|\(|\)|<[^>]+>)')


def _provider_settings():
    provider = config.LLM_PROVIDER
    if provider == 'openai':
        return config.OPENAI_API_KEY, config.OPENAI_BASE_URL
    if provider == 'grok':
        return config.GROK_API_KEY, config.GROK_BASE_URL
    if provider != 'groq':
        logger.warning(f"Unknown LLM provider: {provider}, falling back to groq")
    return config.GROQ_API_KEY, config.GROQ_BASE_URL


def get_client():
    """延迟创建 LLM 客户端；未配置 API key 时返回 None"""
    global _client
    with _client_lock:
        if _client is None:
            api_key, base_url = _provider_settings()
            if not api_key:
                logger.warning(f"LLM provider {config.LLM_PROVIDER} 未配置 API key，AI 文本生成将返回默认值")
                return None
            _client = OpenAI(api_key=api_key, base_url=base_url, timeout=config.AI_REQUEST_TIMEOUT)
            logger.info(f"LLM 客户端已初始化: {config.LLM_PROVIDER}")
        return _client


def strip_code_blocks(text):
    text = re.sub(r'```[\s\S]*?```', '', text)
    text = re.sub(r'~~~[\s\S]*?~~~', '', text)
    return re.sub(r'`[^`]*`', '', text)


def is_code_like_line(line):
    trimmed = line.strip()
    if not trimmed:
        return False

    symbol_count = len(re.findall(r'[^A-Za-z0-9\s]', trimmed))
    letter_count = len(re.findall(r'[A-Za-z0-9]', trimmed))
    symbol_ratio = symbol_count / max(len(trimmed), 1)

    if letter_count == 0 and symbol_count >= 3:
        return True
    if symbol_ratio > 0.45 and symbol_count >= 4:
        return True
    if _CODE_KEYWORDS.match(trimmed):
        return True
    if _CODE_PUNCTUATION.search(trimmed) and symbol_ratio > 0.2:
        return True
    return False


def extract_plain_text(text):
    """去掉代码块和类代码行，保留自然语言文本"""
    if not text:
        return ''
    lines = strip_code_blocks(text).split('\n')
    kept = '\n'.join(line for line in lines if not is_code_like_line(line))
    return re.sub(r'\n{3,}', '\n\n', kept).strip()


def normalize_suggestions(value):
    if not isinstance(value, list):
        return []
    cleaned = []
    for item in value:
        if not isinstance(item, str):
            continue
        item = re.sub(r'\s+', ' ', strip_code_blocks(item)).strip()
        if item:
            cleaned.append(item)
    unique = list(dict.fromkeys(cleaned))
    return (unique if len(unique) >= SUGGESTION_COUNT else cleaned)[:SUGGESTION_COUNT]


def generate_title(prompt):
    client = get_client()
    if client is None or not prompt:
        return FALLBACK_TITLE
    try:
        response = client.chat.completions.create(
            model=config.AI_TITLE_MODEL,
            messages=[
                {'role': 'system', 'content': TITLE_SYSTEM_PROMPT},
                {'role': 'user', 'content': prompt},
            ],
        )
        title = (response.choices[0].message.content or '').strip().strip('"\'')
        return title or FALLBACK_TITLE
    except Exception as e:
        logger.error(f"Title generation failed: {e}")
        return FALLBACK_TITLE


def generate_followups(user_text, assistant_text):
    clean_user = extract_plain_text(user_text)
    clean_assistant = extract_plain_text(assistant_text)
    if not clean_user or not clean_assistant:
        return []

    client = get_client()
    if client is None:
        return []
    prompt = '\n'.join([
        'User message:',
        clean_user,
        '',
        'Assistant response (text only):',
        clean_assistant,
        '',
        'Generate 5 suggestions that the user might ask next.',
    ])
    try:
        response = client.chat.completions.create(
            model=config.AI_SUGGESTIONS_MODEL,
            messages=[
                {'role': 'system', 'content': SUGGESTIONS_SYSTEM_PROMPT},
                {'role': 'user', 'content': prompt},
            ],
            response_format={'type': 'json_object'},
        )
        payload = json.loads(response.choices[0].message.content or '{}')
        return normalize_suggestions(payload.get('suggestions'))
    except Exception as e:
        logger.error(f"Suggestion generation failed: {e}")
        return []
