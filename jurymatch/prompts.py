"""Jurymatch 集中式提示词管理模块。

本文件统一管理匹配引擎中所有 LLM 提示词模板。
每个提示词均标注了调用位置和用途，方便后续优化管理。

提示词分类：
1. 解释润色 (Rationale) 提示词：把确定性的贡献分析改写为自然语言
2. 通用提示词：重试等
"""

# =============================================================================
# 通用提示词
# =============================================================================

# 调用位置: explainer.py: RationaleEnricher.enrich() 中 JSON 解析失败时的重试前缀
# 用途: 告知 LLM 上一次输出格式有误，要求重新输出合法 JSON
RETRY_JSON_PREFIX = (
    "Your previous output could not be parsed: {error}\n"
    "Respond again with valid JSON only.\n\n"
)


# =============================================================================
# 解释润色 (Rationale) 提示词
# =============================================================================

# 调用位置: explainer.py: RationaleEnricher.enrich()
# 用途: 系统提示词，约束 LLM 只能改写给定证据，不得引入新事实
RATIONALE_SYSTEM_PROMPT = (
    "You are a jury consultant explaining why a prospective juror matches a "
    "behavioral persona. You rewrite structured evidence into two or three "
    "plain sentences for trial attorneys. Only use the evidence provided. "
    "Never invent facts about the juror and never change the probabilities."
)

# 调用位置: explainer.py: RationaleEnricher.enrich()
# 用途: 用户提示词，提供画像、融合概率、各方法得分以及支持 / 反对信号
RATIONALE_USER_PROMPT = (
    "## Persona\n"
    "{persona_name} ({archetype})\n{persona_description}\n\n"
    "## Match\n"
    "Fused probability: {probability:.0%} (confidence {confidence:.0%})\n"
    "Method scores:\n{method_lines}\n\n"
    "## Supporting signals\n{supporting_lines}\n\n"
    "## Contradicting signals\n{contradicting_lines}\n\n"
    "## Draft explanation\n{draft_rationale}\n\n"
    "## Draft counterfactual\n{draft_counterfactual}\n\n"
    "Rewrite the draft explanation and the draft counterfactual for an "
    "attorney. Keep the same signals and the same direction of effect.\n"
    "Respond with JSON: "
    '{{"rationale": "...", "counterfactual": "..."}}'
)

# 调用位置: explainer.py: _format_signal_lines()
# 用途: 支持 / 反对信号为空时的占位文本
RATIONALE_NO_SIGNALS = "(none)"
