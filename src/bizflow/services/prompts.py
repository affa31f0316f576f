from __future__ import annotations

from typing import Dict, List, Optional

from ..domain.chat_models import ChatSurface, PageContext

SYSTEM_PROMPT = """당신은 BizFlow의 AI 재무 어시스턴트입니다.
한국의 세금계산서, 거래명세표, 부가가치세, 사업자등록 등 재무/세무 관련 질문에 친절하고 정확하게 답변합니다.

## BizFlow 플랫폼 기능 안내

1. **대시보드** (/) - 이번 달 매출/매입 현황, 세금계산서 수, 처리 대기 건수, 6개월 매출/매입 차트, 최근 문서 목록을 한눈에 확인
2. **세금계산서 목록** (/invoices) - 세금계산서 전체 조회, 거래처명 검색, 상태별 필터(작성중/발행완료/전송완료/승인완료), 발행/전송/삭제
3. **세금계산서 발행** (/invoices/new) - 3단계 마법사: 거래처 선택 → 품목 입력(자동 부가세 10% 계산) → 미리보기 후 발행. 정발행/역발행 선택 가능
4. **거래명세표 목록** (/statements) - 거래명세표 전체 조회, 검색, 상태별 관리
5. **거래명세표 발행** (/statements/new) - 3단계 마법사: 거래처 선택 → 품목 입력 → 미리보기 후 발행
6. **견적서** (/quotes) - 견적서 작성 및 관리, 견적서 작성 마법사(/quotes/new)
7. **입금표** (/payments) - 입금 내역 관리
8. **미수금 관리** (/receivables) - 거래처별 미수금 현황
9. **부가세 미리보기** (/vat-return) - 부가가치세 신고 준비
10. **거래처 관리** (/clients) - 거래처 등록/수정/삭제, 사업자등록번호·대표자·업태·종목·주소·연락처 관리
11. **문서함** (/documents) - 세금계산서·거래명세표 통합 문서 보관함, 유형별 필터, 다운로드
12. **설정** (/settings) - 회사 정보(상호, 사업자등록번호, 대표자 등) 관리, 알림 설정(발행/승인/거래명세표/이메일 알림)
13. **도움말** (/help) - 세금계산서·거래명세표·거래처·AI 도우미 사용 가이드, FAQ

## 규칙
- 항상 한국어로 답변합니다
- 간결하고 이해하기 쉽게 설명합니다
- 초보 사업자도 이해할 수 있도록 쉬운 용어를 사용합니다
- 필요시 단계별로 안내합니다
- 법률/세무 조언은 참고용이며 전문가 상담을 권장합니다
- 사용자의 질문과 관련된 BizFlow 기능이 있으면, 답변 마지막에 반드시 해당 기능으로 이동할 수 있는 링크를 [[페이지이름|경로]] 형식으로 추가합니다.
  예시: [[세금계산서 발행하기|/invoices/new]] [[거래처 관리|/clients]]
- 여러 기능이 관련되면 여러 개의 링크를 추가합니다.
- 링크는 반드시 위 BizFlow 기능 목록에 있는 경로만 사용합니다.
- 금액 계산 결과는 {{calc|항목:금액|항목:금액|합계:금액}} 형식으로 보여주고, 마지막 항목은 항상 합계입니다.
- 해야 할 일 목록은 {{checklist|할 일|할 일|할 일}} 형식으로 보여줍니다."""

PAGE_CONTEXTS: Dict[str, PageContext] = {
    ctx.route: ctx
    for ctx in (
        PageContext(route="/", label="대시보드", description="사용자는 대시보드에서 이번 달 매출/매입 현황과 최근 문서를 보고 있습니다."),
        PageContext(route="/invoices", label="세금계산서", description="사용자는 세금계산서 목록 화면에서 발행된 세금계산서를 조회하고 있습니다."),
        PageContext(
            route="/invoices/new",
            label="세금계산서 발행",
            description="사용자는 세금계산서 발행 마법사(거래처 선택 → 품목 입력 → 미리보기)를 진행 중입니다. 공급가액과 부가세(10%) 계산을 도와주세요.",
        ),
        PageContext(route="/statements", label="거래명세표", description="사용자는 거래명세표 목록 화면을 보고 있습니다."),
        PageContext(route="/statements/new", label="거래명세표 발행", description="사용자는 거래명세표 발행 마법사를 진행 중입니다."),
        PageContext(route="/quotes", label="견적서", description="사용자는 견적서 목록 화면을 보고 있습니다."),
        PageContext(route="/quotes/new", label="견적서 작성", description="사용자는 견적서 작성 마법사를 진행 중입니다."),
        PageContext(route="/payments", label="입금표", description="사용자는 입금표(입금 내역) 화면을 보고 있습니다."),
        PageContext(route="/receivables", label="미수금 관리", description="사용자는 거래처별 미수금 현황을 확인하고 있습니다."),
        PageContext(route="/vat-return", label="부가세 미리보기", description="사용자는 부가가치세 신고를 준비하며 매출/매입 세액을 확인하고 있습니다."),
        PageContext(route="/clients", label="거래처 관리", description="사용자는 거래처 정보를 등록하거나 수정하고 있습니다."),
        PageContext(route="/documents", label="문서함", description="사용자는 세금계산서와 거래명세표 문서함을 보고 있습니다."),
        PageContext(route="/settings", label="설정", description="사용자는 회사 정보와 알림 설정을 관리하고 있습니다."),
        PageContext(route="/help", label="도움말", description="사용자는 도움말과 자주 묻는 질문을 보고 있습니다."),
    )
}

CHAT_SURFACES: Dict[str, ChatSurface] = {
    "widget": ChatSurface(
        name="widget",
        title="AI 도우미",
        greeting=(
            "안녕하세요! BizFlow AI 어시스턴트입니다.\n\n"
            "세금계산서, 거래명세표, 부가가치세 등 재무 관련 궁금한 것이 있으시면 편하게 물어보세요!"
        ),
        quick_questions=[
            "세금계산서 발행 방법 알려줘",
            "거래명세표란 뭐야?",
            "부가가치세 계산법",
            "역발행이 뭐야?",
        ],
    ),
    "dashboard": ChatSurface(
        name="dashboard",
        title="AI 어시스턴트",
        greeting="안녕하세요! 무엇을 도와드릴까요?\n\n아래 빠른 질문을 눌러보거나, 직접 입력해보세요.",
        quick_questions=[
            "이번 달 매출 현황",
            "세금계산서 발행 방법",
            "부가세 계산해줘",
            "이번 달 할 일",
        ],
    ),
}


def page_context(current_page: Optional[str]) -> Optional[PageContext]:
    if not current_page:
        return None
    return PAGE_CONTEXTS.get(current_page)


def build_system_prompt(current_page: Optional[str] = None) -> str:
    """Base prompt plus the description of the page the user is on, if known."""
    ctx = page_context(current_page)
    if ctx is None:
        return SYSTEM_PROMPT
    return f"{SYSTEM_PROMPT}\n\n## 현재 화면\n{ctx.label} ({ctx.route}): {ctx.description}"


def list_page_contexts() -> List[PageContext]:
    return list(PAGE_CONTEXTS.values())


def get_surface(name: str) -> Optional[ChatSurface]:
    return CHAT_SURFACES.get(name)
