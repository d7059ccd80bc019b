# tutor_gateway/topic_guard.py
"""Keyword checks that keep a tutoring turn about programming.

``check_topic`` runs before the upstream call. It flags a turn only when the
student names an explicitly off-topic subject and uses no programming
vocabulary at all. ``OffTopicStrikes`` counts consecutive flagged turns per
conversation so the pipeline can answer repeat offenders without calling a
model. ``sanitize_reply`` runs on the upstream answer and rewrites off-topic
subjects that the problem statement itself does not mention.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import redis.asyncio as redis
import regex
from redis.exceptions import RedisError

from tutor_gateway.config import settings
from tutor_gateway.redis_client import get_redis
from tutor_gateway.schemas import QuestionType

logger = logging.getLogger(__name__)

# Any hit means the turn is about programming
PROGRAMMING_KEYWORDS = (
    "代码", "函数", "变量", "循环", "数组", "列表", "字典", "集合",
    "算法", "排序", "递归", "栈", "队列", "二叉树", "图", "链表",
    "dp", "dfs", "bfs", "贪心", "二分", "搜索", "枚举", "模拟",
    "动态规划", "分治", "回溯", "字符串", "哈希", "前缀和",
    "print", "input", "if", "for", "while", "def", "class", "return",
    "import", "int", "str", "float", "list", "dict", "range",
    "报错", "错误", "error", "bug", "调试", "debug", "运行",
    "编译", "输出", "输入", "样例", "测试", "ac", "wa", "tle", "re", "mle",
    "题目", "题意", "思路", "做法", "解题", "提交", "通过",
    "复杂度", "时间", "空间", "o(n)", "o(1)", "优化",
    "冒泡", "选择", "插入", "快排", "归并", "堆", "树状数组",
    "线段树", "并查集", "拓扑排序", "最短路", "最小生成树",
    "python", "c++", "java", "cpp", "编程", "程序",
)

# A turn is only off-topic if it explicitly names one of these
OFF_TOPIC_KEYWORDS = (
    "原神", "崩坏", "王者荣耀", "英雄联盟", "LOL", "我的世界", "Minecraft",
    "绝地求生", "PUBG", "使命召唤", "堡垒之夜", "明日方舟", "光遇",
    "蛋仔派对", "和平精英", "第五人格", "阴阳师", "梦幻西游",
    "穿越火线", "CSGO", "CS2", "Dota", "星穹铁道", "鸣潮", "绝区零",
    "海贼王", "火影忍者", "进击的巨人", "鬼灭之刃", "咒术回战",
    "间谍过家家", "龙珠", "名侦探柯南", "死神", "银魂",
    "刀剑神域", "一拳超人", "全职猎人", "东京喰种", "约会大作战",
    "抖音", "TikTok", "快手", "小红书",
    "猫娘", "女仆", "AI女友", "恋爱模拟",
    "讲个笑话", "讲个故事", "写首诗", "写一篇作文",
    "今天天气", "帮我写情书", "你喜欢", "你觉得好看吗",
)

# Subjects rewritten out of model replies (matched case-sensitively)
REPLY_OFF_TOPIC_KEYWORDS = (
    "原神", "崩坏", "王者荣耀", "英雄联盟", "LOL", "我的世界", "Minecraft",
    "绝地求生", "PUBG", "使命召唤", "堡垒之夜", "Fortnite", "明日方舟",
    "光遇", "蛋仔派对", "和平精英", "第五人格", "阴阳师", "梦幻西游",
    "穿越火线", "CSGO", "CS2", "Dota", "星穹铁道", "鸣潮", "绝区零",
    "海贼王", "火影忍者", "进击的巨人", "鬼灭之刃", "咒术回战",
    "间谍过家家", "龙珠", "名侦探柯南", "死神", "银魂",
    "刀剑神域", "一拳超人", "全职猎人", "东京喰种", "约会大作战",
    "抖音", "TikTok", "B站", "快手", "微博", "小红书",
    "猫娘", "女仆", "AI女友", "恋爱",
)

REDACTED_TOPIC = "该话题"

PROGRAMMING_CONTENT = regex.compile(
    r"代码|函数|变量|循环|数组|列表|算法|排序|递归|栈|队列|二叉树|图|dp|dfs|bfs"
    r"|print|if|for|while|def|class|return|import|int|str|float|input|output",
    regex.IGNORECASE,
)

OFF_TOPIC_REPLY = (
    "This question is unrelated to the current programming problem. Share your code, "
    "the error message or what you have tried so far and I will keep helping."
)
CLARIFY_FALLBACK_REPLY = (
    "That part is unrelated to learning programming, so I can't explain it. "
    "Select the part of the answer about the code or the algorithm and ask again."
)


@dataclass(frozen=True)
class TopicCheck:
    off_topic: bool
    matched_keyword: Optional[str] = None


@dataclass(frozen=True)
class SanitizedReply:
    content: str
    rewritten: bool


def check_topic(text: str, code: Optional[str] = None) -> TopicCheck:
    """Flag a turn that names an off-topic subject without any programming words.

    Turns with attached code are never flagged.
    """
    if code and code.strip():
        return TopicCheck(off_topic=False)

    lowered = text.lower()
    matched = next((k for k in OFF_TOPIC_KEYWORDS if k.lower() in lowered), None)
    if matched is None:
        return TopicCheck(off_topic=False)

    if any(k in lowered for k in PROGRAMMING_KEYWORDS):
        return TopicCheck(off_topic=False)
    return TopicCheck(off_topic=True, matched_keyword=matched)


def sanitize_reply(
    reply: str,
    question_type: QuestionType,
    problem_content: Optional[str] = None,
) -> SanitizedReply:
    """Rewrite off-topic subjects in a model reply.

    Subjects that appear in the problem statement are kept. A rewritten
    clarify reply with no programming content left is replaced by a fixed
    redirect.
    """
    trusted = problem_content or ""
    content = reply
    rewritten = False

    for keyword in REPLY_OFF_TOPIC_KEYWORDS:
        if keyword in trusted:
            continue
        if keyword in content:
            content = content.replace(keyword, REDACTED_TOPIC)
            rewritten = True

    if rewritten and question_type is QuestionType.CLARIFY and not PROGRAMMING_CONTENT.search(content):
        content = CLARIFY_FALLBACK_REPLY

    return SanitizedReply(content=content, rewritten=rewritten)


def strike_key(conversation_id: str) -> str:
    return f"offtopic:{quote(conversation_id, safe='')}"


class OffTopicStrikes:
    """Consecutive off-topic turns per conversation, counted in Redis.

    An on-topic turn clears the count. Without a conversation id or a
    reachable store every off-topic turn counts as the first one, so the
    model is still asked.
    """

    def __init__(
        self,
        redis_factory: Callable[[], Awaitable[Optional[redis.Redis]]] = get_redis,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis_factory = redis_factory
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.off_topic_strike_ttl_seconds

    async def record(self, conversation_id: Optional[str], off_topic: bool) -> int:
        """Record one turn and return the consecutive off-topic count."""
        fallback = 1 if off_topic else 0
        if not conversation_id:
            return fallback

        key = strike_key(conversation_id)
        try:
            client = await self._redis_factory()
            if client is None:
                return fallback

            if not off_topic:
                await client.delete(key)
                return 0

            count = await client.incr(key)
            await client.expire(key, self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.warning(f"Off-topic strike store error for {key}: {e}")
            return fallback
        return count
