"""Classes and functions for measuring how clustered a binary trait is on a rooted bifurcating
phylogenetic tree, using the sum of sister-clade differences"""
import argparse
import logging
import numbers
import random
import re
import sys
from io import StringIO
from collections import deque
from collections import namedtuple
from collections.abc import Mapping
import numpy as np

logger = logging.getLogger(__name__)

# Allowed values for the "mean" option of SisterCladeEngine
MEAN_VARIANTS = ("tips", "sisters")

###################################################################################################
###################################################################################################
##
##  Implementation notes:
##        (1) The representative value of an internal node is the mean trait value of ALL its
##            descendant tips, recomputed from the full descendant set at every level. This is
##            NOT the unweighted average of the two children's representative values, and the
##            two disagree whenever sister clades have different sizes. The unweighted version
##            is available as mean="sisters" so the two can be compared, but "tips" is default.
##
##        (2) Descendant tip sets are taken from Tree.remotechildren_dict, which is built once
##            per tree by set union. Only the sets are memoised: sums and means are still
##            computed from the full enumeration of each node's tips.
##
##        (3) Cost of propagation is proportional to the summed clade sizes over all internal
##            nodes, i.e. O(N*T) for a caterpillar tree. Fine for trees with a few thousand tips.
##
###################################################################################################
###################################################################################################

###################################################################################################
###################################################################################################
#
# Various functions used by methods, that do not fit neatly in any class
###################################################################################################

def remove_comments(text):
    """Takes input string and strips away commented text, delimited by '[' and ']'.
        Also deals with nested comments."""

    # Bail early if there are no comment delimiters in string
    if "[" not in text and "]" not in text:
        return text
    elif text.count("[") != text.count("]"):
        raise TreeError("String contains different number of left and right comment delimiters")

    depth = 0
    processed_text = []
    for pos, char in enumerate(text):
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth < 0:
                context = text[max(pos - 10, 0):pos + 10]
                raise TreeError(f"Unmatched end-comment delimiter. Context: '{context}'")
        elif depth == 0:
            processed_text.append(char)
    return "".join(processed_text)

####################################################################################

def _parse_traitvalue(word):
    """Converts table cell to int or float where possible. Other strings are returned unchanged,
    so non-numeric cells are reported by the engine instead of being silently replaced"""

    try:
        return int(word)
    except ValueError:
        pass
    try:
        return float(word)
    except ValueError:
        return word

####################################################################################

def _is_realnumber(value):
    """True for real-valued numbers (including Fraction and Decimal). False for bool and complex"""

    if isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Number):
        return False
    return not isinstance(value, numbers.Complex) or isinstance(value, numbers.Real)

###################################################################################################
###################################################################################################

class TreeError(Exception):
    pass

class InvalidTreeType(TreeError):
    """Tree is not a rooted, bifurcating Tree object"""
    pass

###################################################################################################

class TraitError(Exception):
    pass

class InvalidTraitType(TraitError):
    """Trait values are not numeric"""
    pass

class InvalidTraitDomain(TraitError):
    """Trait values are numeric but not all in {0, 1}"""
    pass

class TraitCountMismatch(TraitError):
    """Number of trait values differs from number of tips"""
    pass

class TraitLabelMismatch(TraitCountMismatch):
    """Trait mapping has one value per tip, but is keyed by names that are not the tree's tips"""
    pass

###################################################################################################
###################################################################################################

class Childref:
    """Reference to a child node, tagged with the kind of node (Tip or Internal)"""

    __slots__ = ["node"]

    def __init__(self, node):
        self.node = node

    def __eq__(self, other):
        return type(self) is type(other) and self.node == other.node

    def __hash__(self):
        return hash((type(self).__name__, self.node))

    def __repr__(self):
        return f"{type(self).__name__}({self.node!r})"

class Tip(Childref):
    __slots__ = []

class Internal(Childref):
    __slots__ = []

###################################################################################################
###################################################################################################

# Per-node record produced by SisterCladeEngine. Records are created once and never rewritten
# value: what the node contributes to its parent's diff (equal to mean unless mean="sisters")
NodeMetrics = namedtuple("NodeMetrics", ["node", "descendant_count", "sum", "mean", "diff", "value"])

# Outcome of one (tree, trait) evaluation. metrics is in Tree.internal_nodes order
Result = namedtuple("Result", ["metrics", "sum_of_differences", "normalized_sum", "positive_fraction"])

# One row of the summary table produced by evaluate_traits
TraitSummary = namedtuple("TraitSummary", ["name", "sum_of_differences", "normalized_sum"])

###################################################################################################
###################################################################################################

class NewickStringParser:
    """Class creating parser for Newick tree strings. Used in Tree.from_string"""

    def __init__(self):
        self.delimiters = ",:;()"
        self.delimset = set(self.delimiters)
        self.regex = re.compile("([" + re.escape(self.delimiters) + "])")

        # Dispatch dictionary:
        # Key = current state and token-type
        # Value = tuple of
        # (1) Function that should be run to further build tree data structure (argument=token-value)
        # (2) New state (the one we move to after this step)
        self.dispatch = {
            "TREE_START":       {   "(":        (self._handle_add_root_intnode,     "INTNODE_START")    },
            "INTNODE_START":    {   "(":        (self._handle_add_intnode,          "INTNODE_START"),
                                    "NUM_NAME": (self._handle_add_leaf,             "LEAF")             },
            "LEAF":             {   ":":        (self._handle_transition_brlen,     "EXPECTING_BRLEN"),
                                    ",":        (self._handle_transition_child,     "EXPECTING_CHILD"),
                                    ")":        (self._handle_intnode_end,          "INTNODE_END")      },
            "EXPECTING_BRLEN":  {   "NUM_NAME": (self._handle_add_brlen,            "BRLEN")            },
            "BRLEN":            {   ",":        (self._handle_transition_child,     "EXPECTING_CHILD"),
                                    ")":        (self._handle_intnode_end,          "INTNODE_END")      },
            "EXPECTING_CHILD":  {   "(":        (self._handle_add_intnode,          "INTNODE_START"),
                                    "NUM_NAME": (self._handle_add_leaf,             "LEAF")             },
            "INTNODE_END":      {   ")":        (self._handle_intnode_end,          "INTNODE_END"),
                                    ",":        (self._handle_transition_child,     "EXPECTING_CHILD"),
                                    ":":        (self._handle_transition_brlen,     "EXPECTING_BRLEN"),
                                    "NUM_NAME": (self._handle_label,                "LABEL"),
                                    ";":        (self._handle_transition_tree_end,  "TREE_END")         },
            "LABEL":            {   ")":        (self._handle_intnode_end,          "INTNODE_END"),
                                    ",":        (self._handle_transition_child,     "EXPECTING_CHILD"),
                                    ":":        (self._handle_transition_brlen,     "EXPECTING_BRLEN"),
                                    ";":        (self._handle_transition_tree_end,  "TREE_END")         },
            "TREE_END":         {}
        }

    ###############################################################################################

    def parse(self, treeobj, treestring):
        # Tree is filled out while parsing. Internal nodes are numbered consecutively in the order
        # they are encountered (preorder), so the root is always node 0.
        # Leafs are identified by a string instead of a number.
        # Branch lengths are checked but not stored, and internal labels (e.g. support values)
        # are skipped: only the topology matters for sister-clade statistics
        self.treeobj = treeobj
        self.treeobj.root = 0

        # These variables are only used while parsing, and are reset for each treestring
        self.node_stack = []
        self.nodeno = None
        self.leafset = set()

        treestring = "".join(treestring.split())    # Remove all whitespace, including newlines
        dispatch = self.dispatch
        delimset = self.delimset
        state = "TREE_START"
        for token_value in self.regex.split(treestring):
            if token_value:
                if token_value in delimset:
                    token_type = token_value
                else:
                    token_type = "NUM_NAME"
                try:
                    handler, state = dispatch[state][token_type]
                except KeyError:
                    self._handle_parse_error(state, token_value, token_type, treestring)
                handler(token_value)

        self.sanitychecks(state, treestring)
        self.treeobj.leaves = set(self.treeobj.tips)
        self.treeobj.intnodes = set(self.treeobj.internal_nodes)
        self.treeobj.nodes = self.treeobj.leaves | self.treeobj.intnodes

        return self.treeobj

    ###############################################################################################

    def sanitychecks(self, state, treestring):
        if state == "TREE_START":
            raise TreeError(f"No tree found in tree-string: '{treestring}'")
        if self.node_stack or state != "TREE_END":
            if treestring.count("(") != treestring.count(")"):
                self._report_imbalance(treestring)
            msg = f"Tree-string ended before tree was complete (missing ';'?): {treestring}"
            raise TreeError(msg)

    ###############################################################################################

    def _report_imbalance(self, treestring):
        msg = "Imbalance in tree-string: different number of left- and right-parentheses\n"
        msg += f"Left: {treestring.count('(')}  Right: {treestring.count(')')}"
        raise TreeError(msg)

    ###############################################################################################

    def _handle_parse_error(self, state, token_value, token_type, treestring):
        # If unexpected token-type was encountered: first check if parentheses are balanced
        if treestring.count("(") != treestring.count(")"):
            self._report_imbalance(treestring)
        msg = ("Parsing error: unexpected token-type for this state:\n"
               f"Parser state: {state}\n"
               f"Token_type:   {token_type}\n"
               f"Token-value:  {token_value}\n"
               f"Tree-string:  {treestring}\n")
        raise TreeError(msg)

    ###############################################################################################

    def _handle_add_root_intnode(self, token_value):
        self.nodeno = 0
        self.treeobj.child_dict[self.nodeno] = []
        self.treeobj.internal_nodes.append(self.nodeno)
        self.node_stack.append(self.nodeno)

    ###############################################################################################

    def _handle_add_intnode(self, token_value):
        self.nodeno += 1
        self.treeobj.child_dict[self.nodeno] = []
        parent = self.node_stack[-1]
        self.treeobj.child_dict[parent].append(self.nodeno)
        self.treeobj.internal_nodes.append(self.nodeno)
        self.node_stack.append(self.nodeno)

    ###############################################################################################

    def _handle_add_leaf(self, name):
        child = sys.intern(name)
        if child in self.leafset:
            raise TreeError(f"Duplicated leafname in treestring: {child}")
        parent = self.node_stack[-1]
        self.treeobj.child_dict[parent].append(child)
        self.treeobj.tips.append(child)
        self.leafset.add(child)
        self.node_stack.append(child)

    ###############################################################################################

    def _handle_transition_child(self, token_value):
        self.node_stack.pop()

    ###############################################################################################

    def _handle_transition_brlen(self, token_value):
        pass

    ###############################################################################################

    def _handle_add_brlen(self, brlen_string):
        try:
            float(brlen_string)
        except ValueError as err:
            raise TreeError(f"Expected branch length: {brlen_string}") from err

    ###############################################################################################

    def _handle_intnode_end(self, token_value):
        self.node_stack.pop()

    ###############################################################################################

    def _handle_label(self, label):
        pass

    ###############################################################################################

    def _handle_transition_tree_end(self, token_value):
        self.node_stack.pop()

###################################################################################################
###################################################################################################

class Tree:
    """Class representing rooted phylogenetic tree object."""

    # Tree is represented as a dictionary of lists. The keys in the dictionary are the internal
    # nodes, and each value lists the children of that node in the order given in the input.
    # Leafs are identified by a string, internal nodes by a number (when parsed from Newick).
    # .tips and .internal_nodes give the nodes in input order (root is first internal node),
    # .leaves and .intnodes are the same nodes as sets for fast membership tests.

    # Implementation note: Tree objects are built by the alternate constructors implemented as
    # classmethods (from_string, from_branchinfo, randtree). The main constructor is mostly empty.
    # Cached attributes depend only on topology, and are discarded by clear_caches() (which
    # check_bifurcating() calls, so every evaluation sees the current child_dict)

    def __init__(self):
        self.child_dict = {}
        self.tips = []
        self.internal_nodes = []
        self.leaves = set()
        self.intnodes = set()
        self.nodes = set()
        self.root = None
        self.clear_caches()

    ###############################################################################################

    @classmethod
    def from_string(cls, treestring):
        """Constructor: Tree object from Newick tree-string"""

        parser_obj = NewickStringParser()
        return parser_obj.parse(cls(), remove_comments(treestring))

    ###############################################################################################

    @classmethod
    def from_branchinfo(cls, parentlist, childlist):
        """Constructor: Tree object from information about all branches in tree

        Information about one branch is given as: parentnodeID, childnodeID
        The two lists are assumed to have same length and be in same order (so index n in
        each list corresponds to same branch). Children of a node keep the order of the lists.

        Note: IDs can be integers or strings, and intnode IDs are kept as given"""

        nbranches = len(parentlist)
        if len(childlist) != nbranches:
            raise TreeError(f"List 'childlist' does not have same length as parentlist: {len(childlist)} != {nbranches}")
        if nbranches == 0:
            raise TreeError("No branches given: can't build tree")

        obj = cls()
        for parent, child in zip(parentlist, childlist):
            obj.child_dict.setdefault(parent, []).append(child)

        # Leaves are the childnodes that are not in parentlist
        parentset = set(parentlist)
        obj.tips = list(dict.fromkeys(child for child in childlist if child not in parentset))

        # Root node is the parent node that is not also in childlist
        rootset = parentset - set(childlist)
        if len(rootset) != 1:
            msg = f"Tree must have exactly one root (parent that is nobody's child). Found: {list(rootset)}"
            raise TreeError(msg)
        obj.root = rootset.pop()

        # Internal nodes in preorder from the root. Nodes not reachable from root are placed last,
        # so check_bifurcating() can report them
        preorder = []
        nodestack = [obj.root]
        seen = set()
        while nodestack:
            node = nodestack.pop()
            if node in seen or node not in obj.child_dict:
                continue
            seen.add(node)
            preorder.append(node)
            nodestack.extend(reversed(obj.child_dict[node]))
        preorder.extend(node for node in obj.child_dict if node not in seen)
        obj.internal_nodes = preorder

        obj.leaves = set(obj.tips)
        obj.intnodes = set(obj.internal_nodes)
        obj.nodes = obj.leaves | obj.intnodes
        return obj

    ###############################################################################################

    @classmethod
    def randtree(cls, leaflist=None, ntips=None, name_prefix="s"):
        """Constructor: bifurcating tree with random topology from list of leaf names OR number of tips"""

        if leaflist is None and ntips is None:
            msg = "Must specify either list of leafnames or number of tips to create random tree"
            raise TreeError(msg)
        if leaflist is not None and ntips is not None:
            msg = "Only specify either list of leafnames or number of tips to create random tree"\
                  " (not both)"
            raise TreeError(msg)

        if leaflist is None:
            ndigits = len(str(ntips))
            leaflist = [f"{name_prefix}{num:0{ndigits}d}" for num in range(ntips)]
        if len(leaflist) < 2:
            raise TreeError("Random tree needs at least two leaves")

        # Random bifurcating process: join two randomly chosen lineages until only one remains
        lineages = list(leaflist)
        while len(lineages) > 1:
            first = lineages.pop(random.randrange(len(lineages)))
            second = lineages.pop(random.randrange(len(lineages)))
            lineages.append(f"({first},{second})")
        return cls.from_string(lineages[0] + ";")

    ###############################################################################################

    def clear_caches(self):
        """Discards lazily computed lookups. Must be called after child_dict is modified"""
        self._parent_dict = None
        self._remotechildren_dict = None
        self._nodeindex = None
        self._sorted_intnodes_deep = None

    ###############################################################################################

    @property
    def parent_dict(self):
        """Lazy evaluation of _parent_dict when needed"""
        if self._parent_dict is None:
            self.build_parent_dict()
        return self._parent_dict

    ###############################################################################################

    def build_parent_dict(self):
        """Constructs _parent_dict enabling faster lookups, when needed"""

        self._parent_dict = {}
        for parent in self.internal_nodes:
            for child in self.child_dict[parent]:
                self._parent_dict[child] = parent
        self._parent_dict[self.root] = None     # Add special value "None" as parent of root

    ###############################################################################################

    @property
    def remotechildren_dict(self):
        """Lazy evaluation of _remotechildren_dict when needed"""
        if self._remotechildren_dict is None:
            self.build_remotechildren_dict()
        return self._remotechildren_dict

    ###############################################################################################

    def build_remotechildren_dict(self):
        """Constructs dict of all {node:frozenset(remotechildren)} pairs in efficient manner.
        Shallow nodes are visited first, so each parent is the union of its children's sets."""

        remdict = self._remotechildren_dict = {}
        for node in self.tips:
            remdict[node] = frozenset([node])
        for parent in self.sorted_intnodes(deepfirst=False):
            remdict[parent] = frozenset().union(*(remdict[kid] for kid in self.child_dict[parent]))

    ###############################################################################################

    @property
    def nodeindex(self):
        """Dict giving 1-based index of each node: tips are 1..T, internal nodes are T+1..T+N.
        Follows order of .tips and .internal_nodes, so the root has index T+1"""

        if self._nodeindex is None:
            ntips = len(self.tips)
            self._nodeindex = {tip: i + 1 for i, tip in enumerate(self.tips)}
            for i, node in enumerate(self.internal_nodes):
                self._nodeindex[node] = ntips + i + 1
        return self._nodeindex

    ###############################################################################################

    def sorted_intnodes(self, deepfirst=True):
        """Returns sorted intnode list for breadth-first traversal of tree"""

        # Returns list sorted such that nodes close to the root go before nodes further away
        # (deepfirst=False reverses this, so all children are listed before their parent)
        if self._sorted_intnodes_deep is None:
            sorted_nodes = []
            curlevel = [self.root]
            while curlevel:
                sorted_nodes.extend(curlevel)
                nextlevel = []
                for node in curlevel:
                    nextlevel.extend(kid for kid in self.child_dict[node] if kid in self.intnodes)
                curlevel = nextlevel
            self._sorted_intnodes_deep = sorted_nodes

        if deepfirst:
            return list(self._sorted_intnodes_deep)
        else:
            return list(reversed(self._sorted_intnodes_deep))

    ###############################################################################################

    def children(self, parent):
        """Returns list containing parent's immediate descendants, in input order"""

        try:
            return list(self.child_dict[parent])
        except KeyError as err:
            msg = f"Node {parent} is not an internal node"
            raise TreeError(msg) from err

    ###############################################################################################

    def child_kinds(self, parent):
        """Returns tuple of parent's children wrapped as Tip or Internal references"""

        return tuple(Tip(kid) if kid in self.leaves else Internal(kid)
                     for kid in self.children(parent))

    ###############################################################################################

    def remote_children(self, parent):
        """Returns set containing all leaves that are descendants of parent"""

        try:
            return set(self.remotechildren_dict[parent])
        except KeyError as err:
            raise TreeError(f"Node {parent} does not exist") from err

    ###############################################################################################

    def parent(self, node):
        """Returns parent of node"""

        try:
            return self.parent_dict[node]
        except KeyError as err:
            raise TreeError(f"Node {node} does not exist (as a key in parent_dict)") from err

    ###############################################################################################

    def is_bifurcation(self, node):
        """Checks if internal node is at bifurcation (has two children)"""
        if node in self.leaves:
            raise TreeError("Node is leaf. Can't check for bifurcation when no children")
        return len(self.children(node)) == 2

    ###############################################################################################

    def leaflist(self):
        """Returns list of leaf names sorted alphabetically"""

        return sorted(self.leaves)

    ###############################################################################################

    def check_bifurcating(self):
        """Raises InvalidTreeType unless tree is rooted, connected, acyclic and every internal
        node has exactly two children. Also discards cached lookups, so they are rebuilt from
        the current child_dict"""

        self.clear_caches()
        if self.root is None or not self.internal_nodes:
            raise InvalidTreeType("Tree has no internal nodes")
        if self.root not in self.intnodes:
            raise InvalidTreeType(f"Root {self.root} is not an internal node")
        if self.leaves & self.intnodes:
            both = sorted(self.leaves & self.intnodes, key=str)
            raise InvalidTreeType(f"Nodes are listed both as leaves and internal nodes: {both}")
        if set(self.child_dict) != self.intnodes:
            raise InvalidTreeType("Set of internal nodes does not match parent-child information")

        nparents = dict.fromkeys(self.nodes, 0)
        for parent in self.internal_nodes:
            kids = self.child_dict[parent]
            if len(kids) != 2:
                msg = f"Internal node {parent} has {len(kids)} children. Only bifurcating trees are allowed"
                raise InvalidTreeType(msg)
            for kid in kids:
                if kid not in nparents:
                    raise InvalidTreeType(f"Child {kid} of node {parent} is not a node in tree")
                nparents[kid] += 1

        if nparents[self.root] != 0:
            raise InvalidTreeType(f"Root {self.root} has a parent")
        for node, count in nparents.items():
            if node != self.root and count != 1:
                raise InvalidTreeType(f"Node {node} has {count} parents (expected 1)")

        # With one parent per non-root node, any node not reachable from root lies on a cycle
        reachable = {self.root}
        nodestack = [self.root]
        while nodestack:
            node = nodestack.pop()
            for kid in self.child_dict.get(node, ()):
                if kid not in reachable:
                    reachable.add(kid)
                    nodestack.append(kid)
        if reachable != self.nodes:
            unreached = sorted(self.nodes - reachable, key=str)
            raise InvalidTreeType(f"Nodes not connected to root: {unreached}")

###################################################################################################
###################################################################################################

class Newicktreefile:
    """Class representing Newick tree file. Iteration returns tree-objects"""

    def __init__(self, filename=None, filecontent=None):

        num_args = (filename is not None) + (filecontent is not None)
        if num_args != 1:
            raise TreeError("Newicktreefile requires either filename or filecontent (not both)")
        elif filecontent is not None:
            self.treefile = StringIO(filecontent)
        else:
            self.treefile = open(filename, mode="rt", encoding="UTF-8")
        self.buffer = ""                # Used for keeping leftovers after reading whole line

        # Minimal file format check: a Nexus file is not a Newick file
        filestart = "".join(self.treefile.readline() for _ in range(3))
        if filestart.find("#NEXUS") != -1:
            self.treefile.close()
            raise TreeError("File does not appear to be in Newick format")
        self.treefile.seek(0)

    ###############################################################################################

    def __enter__(self):
        return self

    ###############################################################################################

    def __exit__(self, type, value, traceback):
        self.close()

    ###############################################################################################

    def __iter__(self):
        return self

    ###############################################################################################

    def __next__(self):
        treestring = self.get_treestring()
        if treestring is None:
            self.treefile.close()
            raise StopIteration
        return Tree.from_string(treestring)

    ###############################################################################################

    def get_treestring(self):
        """Return next tree-string, or None when file is exhausted"""

        # Read until semi-colon encountered
        stringlist = [self.buffer]
        if ";" not in self.buffer:
            for line in self.treefile:
                stringlist.append(line)
                if ";" in line:
                    break
        treestring = "".join(stringlist)

        # If we got this far and still haven't found ";" then EOF must have been reached
        if ";" not in treestring:
            return None

        treestring, _, self.buffer = treestring.partition(";")
        return treestring + ";"

    ###############################################################################################

    def readtree(self):
        """Reads one treestring from file and returns as Tree object. Returns None when exhausted file"""

        try:
            return next(self)
        except StopIteration:
            return None

    ###############################################################################################

    def close(self):
        """For explicit closing of Newicktreefile before content exhausted"""
        self.treefile.close()

###################################################################################################
###################################################################################################

def read_traittable(filename, delimiter=None):
    """Reads table of binary traits and returns dict of {traitname:{tipname:value}}.

    First line is header: first field names the tip column, the remaining fields are trait names.
    Each following line has a tip name followed by one value per trait. Columns are separated
    by delimiter (default: any whitespace). Blank lines are skipped. Traits keep column order.
    Values are converted to int or float where possible, other cells are kept as strings."""

    with open(filename, "r", encoding="UTF-8") as traitfile:
        lines = [line.rstrip("\r\n") for line in traitfile if line.strip()]
    if not lines:
        raise TraitError(f"Trait table is empty: {filename}")

    header = [word.strip() for word in lines[0].split(delimiter)]
    traitnames = header[1:]
    if not traitnames:
        raise TraitError(f"Trait table has no trait columns: {filename}")
    if len(set(traitnames)) != len(traitnames):
        raise TraitError(f"Duplicated trait names in header of {filename}")

    traittable = {name: {} for name in traitnames}
    for lineno, line in enumerate(lines[1:], start=2):
        words = [word.strip() for word in line.split(delimiter)]
        if len(words) != len(header):
            msg = f"Line {lineno} of {filename} has {len(words)} fields (expected {len(header)})"
            raise TraitError(msg)
        tip = sys.intern(words[0])
        if tip in traittable[traitnames[0]]:
            raise TraitError(f"Duplicated tip name in {filename}: {tip}")
        for name, word in zip(traitnames, words[1:]):
            traittable[name][tip] = _parse_traitvalue(word)

    logger.info("Read %d traits for %d tips from %s", len(traitnames), len(lines) - 1, filename)
    return traittable

###################################################################################################
###################################################################################################

class SisterCladeEngine:
    """Computes sum of sister-clade differences for a binary trait on a rooted bifurcating tree.

    mean = "tips": representative value of an internal node is the mean trait value of all
                   its descendant tips (default)
    mean = "sisters": representative value of an internal node is the unweighted average of
                   its two children's representative values"""

    def __init__(self, mean="tips"):
        if mean not in MEAN_VARIANTS:
            raise ValueError(f"Unknown mean variant: {mean!r}. Must be one of {MEAN_VARIANTS}")
        self.mean = mean

    ###############################################################################################

    def evaluate(self, tree, traits):
        """Validates input, and returns Result for one (tree, traits) pair.

        traits: mapping {tipname:value} or sequence of values in the order of tree.tips.
        Each call builds its own metrics table, so one engine can be reused across traits"""

        traitdict = self.validate(tree, traits)
        metrics = self._propagate(tree, traitdict)
        return self._aggregate(tree, metrics, traitdict)

    ###############################################################################################

    def validate(self, tree, traits):
        """Checks tree and traits, and returns dict of {tipname:float}.
        Checks are done in fixed order, and only the first problem is reported:
        InvalidTreeType, InvalidTraitType, InvalidTraitDomain, TraitCountMismatch"""

        if not isinstance(tree, Tree):
            raise InvalidTreeType(f"Expected Tree object, got {type(tree).__name__}")
        tree.check_bifurcating()

        if isinstance(traits, Mapping):
            keys = list(traits.keys())
            values = list(traits.values())
        elif isinstance(traits, (str, bytes)):
            raise InvalidTraitType("Trait values must be a mapping or sequence of numbers, not a string")
        else:
            keys = None
            try:
                values = list(traits)
            except TypeError as err:
                raise InvalidTraitType(f"Trait values are not a sequence: {type(traits).__name__}") from err

        # numpy silently casts booleans mixed with numbers to int, so they are caught before conversion
        if any(isinstance(value, (bool, np.bool_)) for value in values):
            raise InvalidTraitType("Trait values must be numbers, not booleans")
        try:
            valarray = np.asarray(values)
        except ValueError as err:
            raise InvalidTraitType(f"Trait values can't be converted to numbers: {err}") from err
        if valarray.ndim != 1:
            raise InvalidTraitType(f"Trait values must be one-dimensional (got {valarray.ndim} dimensions)")

        # Object arrays arise from e.g. Fraction, Decimal, or integers too large for int64
        if valarray.dtype == object:
            if not all(_is_realnumber(value) for value in values):
                raise InvalidTraitType("Trait values are not all real numbers")
            is_binary = np.array([value == 0 or value == 1 for value in values], dtype=bool)
        elif np.issubdtype(valarray.dtype, np.number) and not np.issubdtype(valarray.dtype, np.complexfloating):
            is_binary = np.isin(valarray, (0, 1))
        else:
            raise InvalidTraitType(f"Trait values are not numeric (dtype: {valarray.dtype})")

        if not is_binary.all():
            badvalues = [values[i] for i in np.flatnonzero(~is_binary)[:5]]
            raise InvalidTraitDomain(f"Trait values must be 0 or 1. Found: {badvalues}")

        if len(values) != len(tree.tips):
            msg = f"Number of trait values ({len(values)}) differs from number of tips ({len(tree.tips)})"
            raise TraitCountMismatch(msg)
        if keys is None:
            keys = tree.tips
        elif set(keys) != tree.leaves:
            missing = sorted(tree.leaves - set(keys), key=str)
            unknown = sorted(set(keys) - tree.leaves, key=str)
            msg = f"Trait names do not match tips. Missing tips: {missing}. Unknown names: {unknown}"
            raise TraitLabelMismatch(msg)

        return dict(zip(keys, (float(value) for value in values)))

    ###############################################################################################

    def _propagate(self, tree, traitdict):
        """Resolves NodeMetrics for all internal nodes. Returns dict of {node:NodeMetrics}"""

        # Unresolved nodes map to None. Each node is resolved exactly once:
        # (1) leaf-pair phase: all nodes with two tip children
        # (2) worklist phase: a parent is resolved as soon as its last internal child is resolved
        metrics = dict.fromkeys(tree.internal_nodes)
        parent_dict = tree.parent_dict
        nblocked = {}
        worklist = deque()

        for node in tree.internal_nodes:
            kids = tree.child_kinds(node)
            nblocked[node] = sum(isinstance(kid, Internal) for kid in kids)
            if nblocked[node] == 0:
                trait1, trait2 = (traitdict[kid.node] for kid in kids)
                total = trait1 + trait2
                metrics[node] = NodeMetrics(node, 2, total, total / 2, abs(trait1 - trait2), total / 2)
                worklist.append(node)
        logger.debug("Leaf-pair phase resolved %d of %d internal nodes", len(worklist), len(metrics))

        while worklist:
            parent = parent_dict[worklist.popleft()]
            if parent is None:
                continue
            nblocked[parent] -= 1
            if nblocked[parent] == 0:
                metrics[parent] = self._resolve_node(tree, parent, metrics, traitdict)
                worklist.append(parent)

        unresolved = [node for node, record in metrics.items() if record is None]
        if unresolved:
            raise InvalidTreeType(f"Could not resolve internal nodes (not a rooted tree?): {unresolved}")
        logger.debug("Resolved all %d internal nodes", len(metrics))
        return metrics

    ###############################################################################################

    def _resolve_node(self, tree, node, metrics, traitdict):
        """Computes NodeMetrics for node whose internal children are all resolved"""

        # Count, sum, and mean always come from full enumeration of node's descendant tips
        tips = tree.remotechildren_dict[node]
        count = len(tips)
        total = sum(traitdict[tip] for tip in tips)
        mean = total / count

        rep1, rep2 = (self._representative_value(kid, metrics, traitdict)
                      for kid in tree.child_kinds(node))
        if self.mean == "tips":
            value = mean
        else:
            value = (rep1 + rep2) / 2
        return NodeMetrics(node, count, total, mean, abs(rep1 - rep2), value)

    ###############################################################################################

    def _representative_value(self, kid, metrics, traitdict):
        if isinstance(kid, Tip):
            return traitdict[kid.node]
        return metrics[kid.node].value

    ###############################################################################################

    def _aggregate(self, tree, metrics, traitdict):
        """Sums diffs over all internal nodes and normalises by fraction of tips without trait"""

        table = tuple(metrics[node] for node in tree.internal_nodes)
        diffs = np.fromiter((record.diff for record in table), dtype=float, count=len(table))
        values = np.fromiter(traitdict.values(), dtype=float, count=len(traitdict))

        sum_of_differences = float(diffs.sum())
        positive_fraction = np.count_nonzero(values == 1) / len(values)
        normalized_sum = sum_of_differences * (1 - positive_fraction)
        return Result(table, sum_of_differences, float(normalized_sum), float(positive_fraction))

###################################################################################################
###################################################################################################

def sister_clade_differences(tree, traits, mean="tips"):
    """Returns Result for one trait. Shortcut for SisterCladeEngine(mean).evaluate(tree, traits)"""

    return SisterCladeEngine(mean=mean).evaluate(tree, traits)

###################################################################################################

def evaluate_traits(tree, traittable, mean="tips"):
    """Evaluates several binary traits on the same tree.

    traittable: dict of {traitname:traits} (or iterable of (traitname, traits) pairs), where
    each traits value is accepted by SisterCladeEngine.evaluate.
    Returns list of TraitSummary in input order. Errors name the offending trait"""

    if isinstance(traittable, Mapping):
        traititems = traittable.items()
    else:
        traititems = traittable

    engine = SisterCladeEngine(mean=mean)
    summaries = []
    for name, traits in traititems:
        try:
            result = engine.evaluate(tree, traits)
        except (TreeError, TraitError) as err:
            raise type(err)(f"Trait '{name}': {err}") from err
        summaries.append(TraitSummary(name, result.sum_of_differences, result.normalized_sum))
        logger.debug("Trait %s: sum=%g normalized=%g", name, result.sum_of_differences, result.normalized_sum)
    return summaries

###################################################################################################

def summary_table(summaries, precision=6):
    """Returns tab-separated table (as string) with one line per TraitSummary"""

    tmplist = ["trait\tsum_of_differences\tnormalized_sum\n"]
    for summary in summaries:
        tmplist.append(f"{summary.name}\t"
                       f"{summary.sum_of_differences:.{precision}g}\t"
                       f"{summary.normalized_sum:.{precision}g}\n")
    return "".join(tmplist)

###################################################################################################
###################################################################################################

def build_parser():
    parser = argparse.ArgumentParser(
        prog="sisterclade",
        description="Sum of sister-clade differences for binary traits on a rooted bifurcating tree",
    )
    parser.add_argument("treefile", help="Newick tree file (first tree in file is used)")
    parser.add_argument("traitfile",
                        help="Trait table: header line, then one line per tip with tip name "
                             "followed by one 0/1 value per trait")
    parser.add_argument("--trait", action="append", dest="traits", metavar="NAME",
                        help="Only evaluate this trait (can be repeated; default: all traits in table)")
    parser.add_argument("--mean", choices=MEAN_VARIANTS, default="tips",
                        help="Representative value of internal nodes: mean over all descendant tips "
                             "(tips, default) or unweighted average of the two sister lineages (sisters)")
    parser.add_argument("--delimiter", default=None,
                        help="Column delimiter in traitfile (default: any whitespace; use 'tab' for tab)")
    parser.add_argument("--precision", type=int, default=6, help="Significant digits in output (default: 6)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debugging information to stderr")
    return parser

###################################################################################################

def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s: %(name)s: %(message)s")

    delimiter = "\t" if args.delimiter in ("tab", "\\t") else args.delimiter
    try:
        with Newicktreefile(args.treefile) as treefile:
            tree = treefile.readtree()
        if tree is None:
            raise TreeError(f"No tree found in {args.treefile}")
        traittable = read_traittable(args.traitfile, delimiter=delimiter)
        if args.traits:
            missing = [name for name in args.traits if name not in traittable]
            if missing:
                raise TraitError(f"Traits not found in {args.traitfile}: {', '.join(missing)}")
            traittable = {name: traittable[name] for name in args.traits}
        summaries = evaluate_traits(tree, traittable, mean=args.mean)
    except (TreeError, TraitError, OSError) as err:
        print(f"error: {err}", file=sys.stderr)
        return 1

    sys.stdout.write(summary_table(summaries, precision=args.precision))
    return 0

###################################################################################################

if __name__ == "__main__":
    sys.exit(main())
