"""
lilcc - little arithmetic expression compiler
- compile one expression into x86-64 assembly (intel syntax)
- `main` returns the value of the expression
- tokens are built once, the parser walks them with a cursor
- caret diagnostics for lexer/parser errors

grammar:
expr                : term ((PLUS | MINUS) term)*
term                : factor ((MUL | DIV) factor)*
factor              : INTEGER
                    | LPAREN expr RPAREN

usage:
    $ lilcc '5+6*2-(3+1)' > tmp.s
    $ cc -o tmp tmp.s && ./tmp; echo $?
    13
"""

from enum import Enum
import argparse
import sys

from pyecharts import options as opts
from pyecharts.charts import Tree
import os

LOCAL_ECHARTS = True
_SHOULD_LOG_TOKENS = False
_SHOULD_LOG_TREE = False
_SHOULD_LOG_EVAL = False

INT64_MIN = -2 ** 63
RECURSION_HEADROOM = 1000


def log(msg):
    print(msg, file=sys.stderr)


###############################################################################
#                                                                             #
#   ERROR MESSAGE                                                             #
#                                                                             #
###############################################################################

class ErrorInfo:
    # lexer error

    @staticmethod
    def unrecognized_char(item):
        return f'unrecognized char `{item}`'

    # parser error

    @staticmethod
    def unexpected_token(item, want):
        return f'token `{item}` is not expected, want `{want}`'

    # intepreter error

    @staticmethod
    def division_by_zero():
        return 'division by zero'

    @staticmethod
    def division_overflow():
        return 'division overflow'

    @staticmethod
    def unsupported_op(item):
        return f'op `{item}` is not supported'


class Error(Exception):
    def __init__(self, pos, message):
        super().__init__(message)
        self.pos = pos
        self.message = message

    def __str__(self):
        return f'{self.__class__.__name__}: <{self.pos}>: {self.message}'

    __repr__ = __str__


class LexerError(Error):
    pass


class ParserError(Error):
    pass


class InterpreterError(Error):
    pass


def format_error(text, error):
    """caret diagnostic

      1+*2
        ^ token `*` is not expected, want `INTEGER`
    """
    # keep tabs so the caret lines up with the echoed input
    indent = ''.join(c if c == '\t' else ' ' for c in text[:error.pos])
    return f'{text}\n{indent}^ {error.message}'


###############################################################################
#                                                                             #
#  LEXER                                                                      #
#                                                                             #
###############################################################################

# Token types
class TokenType(Enum):
    # misc
    INTEGER         = 'INTEGER'
    EOF             = 'EOF'
    # opt
    PLUS            = '+'
    MINUS           = '-'
    MUL             = '*'
    DIV             = '/'
    LPAREN          = '('
    RPAREN          = ')'


class Token:
    def __init__(self, token_type, value, pos):
        """Token

        Args:
          token_type: TokenType
          value: int for INTEGER, the char for symbols, None for EOF
          pos: offset of the first char in the input
        """
        self.type = token_type
        self.value = value
        self.pos = pos

    @property
    def lexeme(self):
        if self.type == TokenType.EOF:
            return TokenType.EOF.value
        return str(self.value)

    def __str__(self):
        return f'Token({self.type}, {repr(self.value)}, pos={self.pos})'

    def __repr__(self):
        return self.__str__()


class Lexer:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.current_char = self.text[self.pos] if self.text else None

    def error(self, message):
        raise LexerError(self.pos, message)

    def advance(self):
        """get next char, and increse the pos pointer

        advance the 'pos' pointer and set the 'current_char' variable.
        """
        self.pos += 1
        if self.pos > len(self.text) - 1:
            self.current_char = None  # end of input
        else:
            self.current_char = self.text[self.pos]

    def skip_whitespace(self):
        while self.current_char is not None and self.current_char.isspace():
            self.advance()

    def integer(self):
        """parse an integer from the input
        """
        token = Token(TokenType.INTEGER, None, self.pos)

        result = ''
        while self.current_char is not None and self.current_char in '0123456789':
            result += self.current_char
            self.advance()

        token.value = int(result)
        return token

    def get_next_token(self):
        """lexical analyzer, lexer, scanner, tokenizer

        breaking a sentence apart into tokens. One token one time.
        """
        while self.current_char is not None:
            # space
            if self.current_char.isspace():
                self.skip_whitespace()
                continue

            # digit -> integer
            if self.current_char in '0123456789':
                return self.integer()

            # single-char token
            try:
                token_type = TokenType(self.current_char)
            except ValueError:
                # unrecognized char
                self.error(ErrorInfo.unrecognized_char(self.current_char))
            else:
                token = Token(token_type, self.current_char, self.pos)
                self.advance()
                return token

        return Token(TokenType.EOF, None, len(self.text))

    def tokenize(self):
        """the whole token list, ends with exactly one EOF
        """
        tokens = [self.get_next_token()]
        while tokens[-1].type != TokenType.EOF:
            tokens.append(self.get_next_token())
        return tokens


###############################################################################
#                                                                             #
#  AST & PARSER                                                               #
#                                                                             #
###############################################################################

class AST:
    pass


class Num(AST):
    """integer literal
    """

    def __init__(self, token: Token):
        self.token = token
        self.value = token.value

    def __str__(self):
        return str(self.value)


class BinOp(AST):
    """
    """

    def __init__(self, left, op: Token, right):
        self.left = left
        self.token = self.op = op
        self.right = right

    def __str__(self):
        return f'({self.op.value} {self.left} {self.right})'


def fit_recursion_limit(tokens):
    """make room for a tree as deep as the token list allows

    a '(' costs three parser frames, an operator two visitor frames.
    """
    needed = 4 * len(tokens) + RECURSION_HEADROOM
    if sys.getrecursionlimit() < needed:
        sys.setrecursionlimit(needed)


class Parser:
    def __init__(self, tokens: list):
        """
        tokens: output of Lexer.tokenize(), the last one is EOF
        """
        self.tokens = tokens
        self.pos = 0
        self.current_token = self.tokens[self.pos]
        fit_recursion_limit(tokens)

    def get_next_token(self):
        # the cursor stops on EOF
        if self.pos < len(self.tokens) - 1:
            self.pos += 1
        return self.tokens[self.pos]

    def error(self, token, message):
        raise ParserError(token.pos, message)

    def eat(self, token_type):
        """verify the token type
        """
        if self.current_token.type == token_type:
            self.current_token = self.get_next_token()
        else:
            self.error(self.current_token, ErrorInfo.unexpected_token(self.current_token.lexeme, token_type.value))

    def expr(self):
        """parse expr

        expr : term ((PLUS | MINUS) term)*
        """
        result = self.term()

        while self.current_token.type in (TokenType.PLUS, TokenType.MINUS):
            op = self.current_token
            if op.type == TokenType.PLUS:
                self.eat(TokenType.PLUS)
            else:
                self.eat(TokenType.MINUS)
            result = BinOp(left=result, op=op, right=self.term())

        return result

    def term(self):
        """parse term

        term : factor ((MUL | DIV) factor)*
        """
        result = self.factor()

        while self.current_token.type in (TokenType.MUL, TokenType.DIV):
            op = self.current_token
            if op.type == TokenType.MUL:
                self.eat(TokenType.MUL)
            else:
                self.eat(TokenType.DIV)
            result = BinOp(left=result, op=op, right=self.factor())

        return result

    def factor(self):
        """parse factor

        factor : INTEGER
               | LPAREN expr RPAREN
        """
        token = self.current_token
        if token.type == TokenType.LPAREN:
            self.eat(TokenType.LPAREN)
            result = self.expr()
            self.eat(TokenType.RPAREN)
            return result

        self.eat(TokenType.INTEGER)
        return Num(token)

    def parse(self):
        result = self.expr()
        if self.current_token.type != TokenType.EOF:
            self.error(self.current_token, ErrorInfo.unexpected_token(self.current_token.lexeme, TokenType.EOF.value))

        return result


###############################################################################
#                                                                             #
#  NodeVistor                                                                 #
#                                                                             #
###############################################################################

class NodeVistor:
    def visit(self, node):
        """dispatches
        """
        method_name = 'visit_' + type(node).__name__
        visitor = getattr(self, method_name, self.generic_visitor)
        return visitor(node)

    def generic_visitor(self, node):
        raise Exception(f'No visit_{type(node).__name__} method')


###############################################################################
#                                                                             #
#  DISPLAYER                                                                  #
#                                                                             #
###############################################################################

class Displayer(NodeVistor):
    def __init__(self, tree, title='Tree') -> None:
        self.tree = tree
        self.title = title

    def visit_BinOp(self, node: BinOp):
        data = {
            'name': f'{node.op.value}',
            'children': [self.visit(node.left), self.visit(node.right)]
        }
        return data

    def visit_Num(self, node: Num):
        data = {
            'name': f'{str(node.value)}'
        }
        return data

    def display(self, filename='Tree.html'):
        data = self.visit(self.tree)
        (
            Tree()
            .add(
                series_name="",  # name
                data=[data],  # data
                initial_tree_depth=-1,  # all expand
                orient="TB",  # top-to-bottom
                label_opts=opts.LabelOpts(
                    position="top",
                    vertical_align="middle",
                ),
            )
            .set_global_opts(title_opts=opts.TitleOpts(title=self.title))
            .render('html')
        )
        # modify js reference to local
        with open('html', 'r') as fin:
            content = fin.readlines()
            content[4] = f'    <title>{self.title}</title>\n'
            if LOCAL_ECHARTS:
                content[5] = '    <script type="text/javascript" src="echarts.min.js"></script>\n'
        with open(filename, 'w') as fout:
            fout.writelines(content)
        os.remove('html')
        return filename


###############################################################################
#                                                                             #
#  INTERPRETER                                                                #
#                                                                             #
###############################################################################

def _wrap64(value):
    """wrap like a signed 64-bit register
    """
    return (value - INT64_MIN) % 2 ** 64 + INT64_MIN


class Interpreter(NodeVistor):
    """evaluate the tree the way the generated code does

    64-bit signed wraparound, division truncates toward zero (idiv).
    zero divisor and INT64_MIN / -1 raise where idiv would trap.
    """

    def __init__(self, tree) -> None:
        self.tree = tree

    def error(self, token, message):
        raise InterpreterError(token.pos, message)

    def visit_BinOp(self, node: BinOp):
        left = self.visit(node.left)
        right = self.visit(node.right)

        if node.op.type == TokenType.PLUS:
            return _wrap64(left + right)
        elif node.op.type == TokenType.MINUS:
            return _wrap64(left - right)
        elif node.op.type == TokenType.MUL:
            return _wrap64(left * right)
        elif node.op.type == TokenType.DIV:
            if right == 0:
                self.error(node.op, ErrorInfo.division_by_zero())
            if left == INT64_MIN and right == -1:
                # idiv traps, the quotient does not fit
                self.error(node.op, ErrorInfo.division_overflow())
            quotient = abs(left) // abs(right)
            if (left < 0) != (right < 0):
                quotient = -quotient
            return _wrap64(quotient)
        else:
            self.error(node.op, ErrorInfo.unsupported_op(node.op.value))

    def visit_Num(self, node: Num):
        return _wrap64(node.value)

    def interpret(self):
        return self.visit(self.tree)


###############################################################################
#                                                                             #
#  CODE GENERATOR                                                             #
#                                                                             #
###############################################################################

PROLOGUE = [
    '.intel_syntax noprefix',
    '.globl main',
    'main:',
]

EPILOGUE = [
    '  ret',
]


class CodeGenerator(NodeVistor):
    """stack machine on top of rax

    every node leaves its value in rax. a BinOp saves the left value on the
    stack while the right one is computed, then pops it into rdi.
    """

    def __init__(self, tree) -> None:
        self.tree = tree
        self.lines = []

    def emit(self, instruction):
        self.lines.append(f'  {instruction}')

    def visit_BinOp(self, node: BinOp):
        self.visit(node.left)
        self.emit('push rax')
        self.visit(node.right)
        self.emit('pop rdi')

        # rdi: left, rax: right
        if node.op.type == TokenType.PLUS:
            self.emit('add rax, rdi')
        elif node.op.type == TokenType.MINUS:
            self.emit('sub rdi, rax')
            self.emit('mov rax, rdi')
        elif node.op.type == TokenType.MUL:
            self.emit('imul rax, rdi')
        elif node.op.type == TokenType.DIV:
            self.emit('mov rcx, rax')
            self.emit('mov rax, rdi')
            self.emit('cqo')
            self.emit('idiv rcx')

    def visit_Num(self, node: Num):
        self.emit(f'mov rax, {node.value}')

    def generate(self):
        self.lines = []
        self.visit(self.tree)
        return PROLOGUE + self.lines + EPILOGUE


def compile_expr(text):
    """text -> assembly listing
    """
    tokens = Lexer(text).tokenize()
    tree = Parser(tokens).parse()
    return '\n'.join(CodeGenerator(tree).generate()) + '\n'


###############################################################################
#                                                                             #
#   MAIN                                                                      #
#                                                                             #
###############################################################################

class ArgumentParser(argparse.ArgumentParser):
    """usage errors exit with 1, like lexer/parser errors
    """

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f'{self.prog}: error: {message}\n')


def main(argv=None):
    global _SHOULD_LOG_TOKENS
    global _SHOULD_LOG_TREE
    global _SHOULD_LOG_EVAL

    parser = ArgumentParser(prog='lilcc', description='lilcc - little arithmetic expression compiler')
    parser.add_argument('expr', help='arithmetic expression, e.g. "5+6*2-(3+1)"')
    parser.add_argument('--tokens', action='store_true', help='Print token stream')
    parser.add_argument('--tree', action='store_true', help='Print expression tree')
    parser.add_argument('--eval', action='store_true', help='Print the value of the expression')
    parser.add_argument('--display', action='store_true', help='Render the expression tree to Tree.html')
    args = parser.parse_args(argv)

    _SHOULD_LOG_TOKENS = args.tokens
    _SHOULD_LOG_TREE = args.tree
    _SHOULD_LOG_EVAL = args.eval

    text = args.expr
    try:
        tokens = Lexer(text).tokenize()
        if _SHOULD_LOG_TOKENS:
            for token in tokens:
                log(token)

        tree = Parser(tokens).parse()
        if _SHOULD_LOG_TREE:
            log(tree)

        if args.display:
            Displayer(tree, title=text).display()

        if _SHOULD_LOG_EVAL:
            try:
                log(f'value: {Interpreter(tree).interpret()}')
            except InterpreterError as e:
                log(e)

        lines = CodeGenerator(tree).generate()

    except (LexerError, ParserError) as e:
        print(format_error(text, e), file=sys.stderr)
        return 1

    print('\n'.join(lines))
    return 0


if __name__ == '__main__':
    sys.exit(main())
